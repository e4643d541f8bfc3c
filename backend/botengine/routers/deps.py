"""Shared router dependencies."""

from fastapi import Request

from ..services.bot_supervisor import BotSupervisor
from ..services.webhooks import WebhookService


def get_supervisor(request: Request) -> BotSupervisor:
    return request.app.state.supervisor


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.webhook_service
