# API Routers

from . import bots, health, webhooks

__all__ = ["bots", "health", "webhooks"]
