"""Webhook ingestion - translates external alerts into queued signals.

Everything here runs before the signal processor sees anything: the bot
must exist and be a signal bot, the HMAC signature must match when the bot
has a secret, and the payload must name a known action and a symbol.
"""

import hashlib
import hmac
import json
import logging
import math
import re
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select

from ..models import async_session_maker, Bot, StrategyType
from .audit import add_audit
from .signal_processor import SignalProcessor
from .strategies import ProposedSignal

logger = logging.getLogger(__name__)

ACTION_MAP = {
    "buy": "buy",
    "sell": "sell",
    "close": "close",
    "long": "buy",
    "short": "sell",
    "exit": "close",
    "update_tp": "update_tp",
    "update_sl": "update_sl",
}

REQUIRED_FIELDS = ("action", "symbol")

# "BUY BTCUSDT at 43250 qty 0.1 tp 44000 sl 42000"
TRADINGVIEW_PATTERN = re.compile(
    r"(BUY|SELL|CLOSE)\s+(\w+)"
    r"(?:\s+at\s+(\d+\.?\d*))?"
    r"(?:\s+qty\s+(\d+\.?\d*))?"
    r"(?:\s+tp\s+(\d+\.?\d*))?"
    r"(?:\s+sl\s+(\d+\.?\d*))?",
    re.IGNORECASE,
)

SIGNATURE_HEADERS = ("x-signature", "signature")


class WebhookValidationError(Exception):
    """Webhook rejected before reaching the signal queue."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def normalize_action(action: str) -> str:
    """Map an external action name onto a signal type (case-insensitive)."""
    signal_type = ACTION_MAP.get(str(action).strip().lower())
    if signal_type is None:
        raise WebhookValidationError(f"Invalid action: {action}")
    return signal_type


def parse_number(value: Any, field: str, integer: bool = False) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        raise WebhookValidationError(f"Invalid number for {field}: {value}")
    # float() accepts "nan" and "inf"
    if not math.isfinite(number):
        raise WebhookValidationError(f"Invalid number for {field}: {value}")
    return int(number) if integer else number


def verify_signature(secret: str, raw_body: bytes, signature: str) -> bool:
    """Check a hex HMAC-SHA256 of the raw request body."""
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def parse_tradingview_alert(message: str) -> Dict[str, Any]:
    """Parse a free-text TradingView alert into the generic payload.

    Raises:
        WebhookValidationError: Text does not match the alert format.
    """
    match = TRADINGVIEW_PATTERN.search(message or "")
    if not match:
        raise WebhookValidationError("Invalid TradingView alert format")

    action, symbol, price, quantity, take_profit, stop_loss = match.groups()
    return {
        "action": action.lower(),
        "symbol": symbol,
        "price": float(price) if price else None,
        "quantity": float(quantity) if quantity else None,
        "take_profit": float(take_profit) if take_profit else None,
        "stop_loss": float(stop_loss) if stop_loss else None,
        "source": "tradingview",
        "original_message": message,
    }


def convert_3commas_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a 3Commas-style webhook body into the generic payload."""
    return {
        "action": data.get("action") or data.get("message_type"),
        "symbol": data.get("pair") or data.get("symbol"),
        "price": data.get("price"),
        "quantity": data.get("quantity") or data.get("amount"),
        "take_profit": data.get("take_profit"),
        "stop_loss": data.get("stop_loss"),
        "source": "3commas",
    }


def build_signal(payload: Dict[str, Any]) -> ProposedSignal:
    """Validate a generic payload and turn it into a signal.

    Raises:
        WebhookValidationError: Missing field, unknown action or bad number.
    """
    if not isinstance(payload, dict):
        raise WebhookValidationError("Payload must be a JSON object")

    for field in REQUIRED_FIELDS:
        if not payload.get(field):
            raise WebhookValidationError(f"Missing required field: {field}")

    return ProposedSignal(
        type=normalize_action(payload["action"]),
        symbol=str(payload["symbol"]),
        price=parse_number(payload.get("price"), "price"),
        quantity=parse_number(payload.get("quantity"), "quantity"),
        take_profit=parse_number(payload.get("take_profit"), "take_profit"),
        stop_loss=parse_number(payload.get("stop_loss"), "stop_loss"),
        leverage=parse_number(payload.get("leverage"), "leverage", integer=True),
        data=dict(payload),
    )


def _decode_json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body or b"{}")
    except ValueError:
        raise WebhookValidationError("Invalid JSON body")


def _generic_payload(raw_body: bytes) -> Dict[str, Any]:
    return _decode_json(raw_body)


def _tradingview_payload(raw_body: bytes) -> Dict[str, Any]:
    # TradingView posts either JSON with a message/text field or the bare alert text
    try:
        data = json.loads(raw_body)
    except ValueError:
        return parse_tradingview_alert(raw_body.decode("utf-8", errors="replace"))
    if isinstance(data, dict):
        return parse_tradingview_alert(data.get("message") or data.get("text") or "")
    return parse_tradingview_alert(str(data))


def _3commas_payload(raw_body: bytes) -> Dict[str, Any]:
    data = _decode_json(raw_body)
    if not isinstance(data, dict):
        raise WebhookValidationError("Payload must be a JSON object")
    return convert_3commas_payload(data)


PAYLOAD_PARSERS: Dict[str, Callable[[bytes], Dict[str, Any]]] = {
    "generic": _generic_payload,
    "tradingview": _tradingview_payload,
    "3commas": _3commas_payload,
}


class WebhookService:
    """Validates webhook requests and queues their signals."""

    def __init__(self, processor: SignalProcessor, session_factory=async_session_maker):
        self.processor = processor
        self._session_factory = session_factory

    async def get_bot(self, bot_id: int) -> Optional[Bot]:
        async with self._session_factory() as session:
            result = await session.execute(select(Bot).where(Bot.id == bot_id))
            return result.scalar_one_or_none()

    async def get_signal_bot(self, bot_id: int) -> Bot:
        bot = await self.get_bot(bot_id)
        if bot is None or bot.strategy_type != StrategyType.SIGNAL.value:
            raise WebhookValidationError("Signal bot not found", status_code=404)
        return bot

    async def ingest(
        self,
        bot_id: int,
        raw_body: bytes,
        signature: Optional[str] = None,
        source_ip: Optional[str] = None,
        source: str = "generic",
    ) -> int:
        """Validate a webhook request and queue its signal.

        Args:
            bot_id: Target bot
            raw_body: Request body exactly as received (the signed bytes)
            signature: Hex HMAC-SHA256 from the signature header
            source_ip: Caller address for the audit trail
            source: "generic", "tradingview" or "3commas"

        Returns:
            The queued signal id

        Raises:
            WebhookValidationError: Request rejected; carries the HTTP status.
        """
        bot = await self.get_signal_bot(bot_id)

        if bot.webhook_secret:
            if not signature:
                raise WebhookValidationError("Missing signature", status_code=401)
            if not verify_signature(bot.webhook_secret, raw_body, signature):
                logger.warning(f"Bot {bot_id}: rejected webhook with invalid signature from {source_ip}")
                raise WebhookValidationError("Invalid signature", status_code=401)

        payload = PAYLOAD_PARSERS[source](raw_body)
        signal_id = await self.enqueue_signal(bot_id, payload, source_ip=source_ip, user_id=bot.user_id)
        logger.info(f"Signal received for bot {bot.name} via {source}: {payload.get('action')} {payload.get('symbol')}")
        return signal_id

    async def enqueue_signal(
        self,
        bot_id: int,
        payload: Dict[str, Any],
        source_ip: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        """Validate a generic payload and queue it for a bot.

        Raises:
            WebhookValidationError: Invalid payload.
        """
        proposed = build_signal(payload)
        signal_id = await self.processor.enqueue(bot_id, proposed, source_ip=source_ip)

        async with self._session_factory() as session:
            add_audit(
                session,
                "signal_received",
                user_id=user_id,
                bot_id=bot_id,
                details={
                    "signal_id": signal_id,
                    "signal_type": proposed.type,
                    "symbol": proposed.symbol,
                    "source": payload.get("source", "generic"),
                    "source_ip": source_ip,
                },
            )
            await session.commit()

        return signal_id


def webhook_urls(bot: Bot, base_url: str) -> Dict[str, Any]:
    """Describe the endpoints a signal bot accepts alerts on."""
    base_url = base_url.rstrip("/")
    return {
        "bot_id": bot.id,
        "bot_name": bot.name,
        "webhook_urls": {
            "generic": f"{base_url}/api/webhooks/signal/{bot.id}",
            "tradingview": f"{base_url}/api/webhooks/tradingview/{bot.id}",
            "3commas": f"{base_url}/api/webhooks/3commas/{bot.id}",
        },
        "signature_required": bool(bot.webhook_secret),
        "signature_headers": list(SIGNATURE_HEADERS),
        "instructions": {
            "generic": "Send POST requests with JSON payload containing action, symbol, price, quantity, etc.",
            "tradingview": 'Use alert message format: "BUY BTCUSDT at 43250 qty 0.1 tp 44000 sl 42000"',
            "3commas": "Compatible with 3Commas webhook format",
        },
    }
