"""
API Routes
"""
from fastapi import APIRouter

from grievance_bot.api.webhooks.whatsapp import router as whatsapp_router

router = APIRouter()

router.include_router(whatsapp_router, prefix="/whatsapp", tags=["whatsapp"])

# Older Meta app configurations point here
router.include_router(
    whatsapp_router,
    prefix="/webhooks/whatsapp",
    tags=["whatsapp"],
    include_in_schema=False
)
