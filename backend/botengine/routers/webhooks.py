"""Webhook router - inbound alerts from TradingView, 3Commas and generic senders."""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..services.config import config_service
from ..services.webhooks import WebhookService, WebhookValidationError, SIGNATURE_HEADERS, webhook_urls
from ..models import StrategyType
from .deps import get_webhook_service

router = APIRouter()


def _signature(request: Request) -> Optional[str]:
    for header in SIGNATURE_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


async def _ingest(request: Request, bot_id: int, source: str, webhooks: WebhookService) -> dict:
    raw_body = await request.body()
    try:
        signal_id = await webhooks.ingest(
            bot_id,
            raw_body,
            signature=_signature(request),
            source_ip=request.client.host if request.client else None,
            source=source,
        )
    except WebhookValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {
        "success": True,
        "message": "Signal received and queued for processing",
        "signal_id": signal_id,
    }


@router.post("/signal/{bot_id}")
async def receive_signal(
    bot_id: int,
    request: Request,
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Generic JSON signal webhook."""
    return await _ingest(request, bot_id, "generic", webhooks)


@router.post("/tradingview/{bot_id}")
async def receive_tradingview(
    bot_id: int,
    request: Request,
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """TradingView alert webhook ("BUY BTCUSDT at 43250 qty 0.1 tp 44000 sl 42000")."""
    return await _ingest(request, bot_id, "tradingview", webhooks)


@router.post("/3commas/{bot_id}")
async def receive_3commas(
    bot_id: int,
    request: Request,
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """3Commas-compatible webhook."""
    return await _ingest(request, bot_id, "3commas", webhooks)


@router.get("/url/{bot_id}")
async def get_webhook_url(
    bot_id: int,
    request: Request,
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Get the webhook URLs for a signal bot."""
    bot = await webhooks.get_bot(bot_id)
    if bot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bot not found")

    if bot.strategy_type != StrategyType.SIGNAL.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Bot is not a signal bot")

    base_url = config_service.get("webhooks.base_url") or str(request.base_url)
    return webhook_urls(bot, base_url)
