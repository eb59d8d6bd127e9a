"""
Low-level HTTP transport to the LLM gateway.

משותף ל-TokenManager (endpoint של הטוקן, ללא Authorization) ול-AIGatewayClient
(endpoints עם Bearer), כך שאין תלות מעגלית בין השניים.
"""
from typing import Any

import httpx

from chatbot.core.logging import get_logger

logger = get_logger(__name__)


class GatewayTransport:
    """httpx.AsyncClient per call, with an explicit timeout on every request"""

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=self._transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        access_token: str | None = None,
        json: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        שולח בקשה ומחזיר את ה-response כמו שהוא.

        Raises:
            httpx.HTTPError: כשל רשת / timeout (לפני שהתקבל status)
        """
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        async with self._client(timeout) as client:
            response = await client.request(
                method,
                path,
                headers=headers,
                json=json,
                data=data,
                files=files,
            )

        logger.debug(
            "Gateway request completed",
            extra_data={"method": method, "path": path, "status_code": response.status_code},
        )
        return response


def safe_json(response: httpx.Response) -> Any:
    """גוף התשובה כ-JSON, או None אם הגוף אינו JSON תקין"""
    try:
        return response.json()
    except ValueError:
        return None
