"""
API Routes
"""
from fastapi import APIRouter

from chatbot.api.routes.admin import router as admin_router
from chatbot.api.routes.embed import router as embed_router
from chatbot.api.webhooks.telegram import router as telegram_router

router = APIRouter()

router.include_router(embed_router, prefix="/embed", tags=["Embed"])
router.include_router(admin_router, prefix="/admin", tags=["Admin"])
router.include_router(telegram_router, prefix="/telegram", tags=["Webhooks"])
