"""Tests for webhook parsing and the webhook endpoints."""

import hashlib
import hmac
import json

import pytest
from sqlalchemy import select

from botengine.models import AuditLog, Signal
from botengine.services.webhooks import (
    WebhookValidationError,
    build_signal,
    convert_3commas_payload,
    normalize_action,
    parse_tradingview_alert,
    verify_signature,
    webhook_urls,
)


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def stored_signals(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(Signal).order_by(Signal.id))
        return result.scalars().all()


# ============================================================================
# Payload parsing
# ============================================================================


class TestActionMapping:
    """Test external action names."""

    @pytest.mark.parametrize(
        "action,expected",
        [
            ("buy", "buy"),
            ("LONG", "buy"),
            ("short", "sell"),
            ("Exit", "close"),
            ("update_tp", "update_tp"),
            ("update_sl", "update_sl"),
        ],
    )
    def test_known_actions(self, action, expected):
        assert normalize_action(action) == expected

    def test_unknown_action(self):
        with pytest.raises(WebhookValidationError, match="Invalid action: hodl"):
            normalize_action("hodl")


class TestTradingViewAlert:
    """Test the free-text alert format."""

    def test_full_alert(self):
        payload = parse_tradingview_alert("BUY BTCUSDT at 43250 qty 0.1 tp 44000 sl 42000")

        assert payload["action"] == "buy"
        assert payload["symbol"] == "BTCUSDT"
        assert payload["price"] == 43250.0
        assert payload["quantity"] == 0.1
        assert payload["take_profit"] == 44000.0
        assert payload["stop_loss"] == 42000.0

    def test_bare_action_and_symbol(self):
        payload = parse_tradingview_alert("close ETHUSDT")

        assert payload["action"] == "close"
        assert payload["symbol"] == "ETHUSDT"
        assert payload["price"] is None
        assert payload["quantity"] is None

    def test_unparseable_text(self):
        with pytest.raises(WebhookValidationError, match="Invalid TradingView alert format"):
            parse_tradingview_alert("hello world")


class TestPayloadConversion:
    """Test 3Commas conversion and generic validation."""

    def test_3commas_fields(self):
        payload = convert_3commas_payload(
            {"message_type": "long", "pair": "BTC_USDT", "amount": "0.5", "price": "100"}
        )

        assert payload["action"] == "long"
        assert payload["symbol"] == "BTC_USDT"
        assert payload["quantity"] == "0.5"
        assert payload["source"] == "3commas"

    def test_build_signal_normalizes(self):
        signal = build_signal({"action": "long", "symbol": "BTC/USDT", "quantity": "0.5", "leverage": "3"})

        assert signal.type == "buy"
        assert signal.quantity == 0.5
        assert signal.leverage == 3
        assert signal.price is None

    @pytest.mark.parametrize("missing", ["action", "symbol"])
    def test_build_signal_requires_fields(self, missing):
        payload = {"action": "buy", "symbol": "BTC/USDT"}
        del payload[missing]

        with pytest.raises(WebhookValidationError, match=f"Missing required field: {missing}"):
            build_signal(payload)

    def test_build_signal_rejects_bad_number(self):
        with pytest.raises(WebhookValidationError, match="Invalid number for price"):
            build_signal({"action": "buy", "symbol": "BTC/USDT", "price": "cheap"})

    @pytest.mark.parametrize(
        "field,value",
        [
            ("leverage", "inf"),
            ("price", "nan"),
            ("quantity", "Infinity"),
            ("take_profit", "-inf"),
            ("stop_loss", float("nan")),
        ],
    )
    def test_build_signal_rejects_non_finite_numbers(self, field, value):
        with pytest.raises(WebhookValidationError, match=f"Invalid number for {field}"):
            build_signal({"action": "buy", "symbol": "BTC/USDT", field: value})


class TestSignature:
    """Test HMAC verification over the raw body."""

    def test_valid_signature(self):
        body = b'{"action": "buy"}'
        assert verify_signature("s3cret", body, sign("s3cret", body))

    def test_signature_is_case_insensitive_hex(self):
        body = b'{"action": "buy"}'
        assert verify_signature("s3cret", body, sign("s3cret", body).upper())

    def test_reencoded_body_fails(self):
        body = b'{"action": "buy"}'
        assert not verify_signature("s3cret", b'{"action":"buy"}', sign("s3cret", body))


# ============================================================================
# Endpoints
# ============================================================================


class TestSignalWebhook:
    """Test POST /api/webhooks/signal/{bot_id}."""

    @pytest.mark.asyncio
    async def test_queues_signal(self, client, make_bot, session_factory):
        bot = await make_bot()

        response = await client.post(
            f"/api/webhooks/signal/{bot.id}",
            json={"action": "long", "symbol": "BTC/USDT", "quantity": 0.2, "take_profit": 60000},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True

        signals = await stored_signals(session_factory)
        assert len(signals) == 1
        assert signals[0].id == data["signal_id"]
        assert signals[0].signal_type == "buy"
        assert signals[0].quantity == 0.2
        assert signals[0].take_profit == 60000
        assert signals[0].processed is False

    @pytest.mark.asyncio
    async def test_writes_audit_record(self, client, make_bot, session_factory):
        bot = await make_bot()

        await client.post(f"/api/webhooks/signal/{bot.id}", json={"action": "buy", "symbol": "BTC/USDT"})

        async with session_factory() as session:
            result = await session.execute(select(AuditLog).where(AuditLog.action == "signal_received"))
            audit = result.scalar_one()
        assert audit.bot_id == bot.id
        assert audit.details["signal_type"] == "buy"

    @pytest.mark.asyncio
    async def test_unknown_bot(self, client):
        response = await client.post("/api/webhooks/signal/9999", json={"action": "buy", "symbol": "BTC/USDT"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_non_signal_bot(self, client, make_bot, session_factory):
        bot = await make_bot(strategy_type="dca")

        response = await client.post(f"/api/webhooks/signal/{bot.id}", json={"action": "buy", "symbol": "BTC/USDT"})

        assert response.status_code == 404
        assert await stored_signals(session_factory) == []

    @pytest.mark.asyncio
    async def test_invalid_action(self, client, make_bot, session_factory):
        bot = await make_bot()

        response = await client.post(f"/api/webhooks/signal/{bot.id}", json={"action": "hodl", "symbol": "BTC/USDT"})

        assert response.status_code == 400
        assert "Invalid action" in response.json()["detail"]
        assert await stored_signals(session_factory) == []

    @pytest.mark.asyncio
    async def test_missing_symbol(self, client, make_bot):
        bot = await make_bot()

        response = await client.post(f"/api/webhooks/signal/{bot.id}", json={"action": "buy"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Missing required field: symbol"

    @pytest.mark.asyncio
    async def test_infinite_leverage_is_rejected(self, client, make_bot, session_factory):
        bot = await make_bot()

        response = await client.post(
            f"/api/webhooks/signal/{bot.id}",
            json={"action": "buy", "symbol": "BTC/USDT", "leverage": "inf"},
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid number for leverage: inf"
        assert await stored_signals(session_factory) == []

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, make_bot):
        bot = await make_bot()

        response = await client.post(f"/api/webhooks/signal/{bot.id}", content=b"{not json")

        assert response.status_code == 400


class TestSignedWebhook:
    """Test bots configured with a webhook secret."""

    @pytest.mark.asyncio
    async def test_missing_signature(self, client, make_bot, session_factory):
        bot = await make_bot(webhook_secret="s3cret")

        response = await client.post(f"/api/webhooks/signal/{bot.id}", json={"action": "buy", "symbol": "BTC/USDT"})

        assert response.status_code == 401
        assert await stored_signals(session_factory) == []

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client, make_bot, session_factory):
        bot = await make_bot(webhook_secret="s3cret")
        body = json.dumps({"action": "buy", "symbol": "BTC/USDT"}).encode()

        response = await client.post(
            f"/api/webhooks/signal/{bot.id}",
            content=body,
            headers={"X-Signature": sign("wrong", body)},
        )

        assert response.status_code == 401
        assert await stored_signals(session_factory) == []

    @pytest.mark.asyncio
    async def test_valid_signature(self, client, make_bot, session_factory):
        bot = await make_bot(webhook_secret="s3cret")
        body = json.dumps({"action": "buy", "symbol": "BTC/USDT"}).encode()

        response = await client.post(
            f"/api/webhooks/signal/{bot.id}",
            content=body,
            headers={"Content-Type": "application/json", "Signature": sign("s3cret", body)},
        )

        assert response.status_code == 200
        assert len(await stored_signals(session_factory)) == 1


class TestSourceWebhooks:
    """Test the TradingView and 3Commas endpoints."""

    @pytest.mark.asyncio
    async def test_tradingview_json_message(self, client, make_bot, session_factory):
        bot = await make_bot()

        response = await client.post(
            f"/api/webhooks/tradingview/{bot.id}",
            json={"message": "BUY BTCUSDT at 43250 qty 0.1 tp 44000 sl 42000"},
        )

        assert response.status_code == 200
        signal = (await stored_signals(session_factory))[0]
        assert signal.signal_type == "buy"
        assert signal.symbol == "BTCUSDT"
        assert signal.price == 43250
        assert signal.stop_loss == 42000
        assert signal.signal_data["source"] == "tradingview"

    @pytest.mark.asyncio
    async def test_tradingview_plain_text(self, client, make_bot, session_factory):
        bot = await make_bot()

        response = await client.post(f"/api/webhooks/tradingview/{bot.id}", content=b"SELL ETHUSDT qty 2")

        assert response.status_code == 200
        signal = (await stored_signals(session_factory))[0]
        assert signal.signal_type == "sell"
        assert signal.quantity == 2

    @pytest.mark.asyncio
    async def test_tradingview_bad_format(self, client, make_bot):
        bot = await make_bot()

        response = await client.post(f"/api/webhooks/tradingview/{bot.id}", json={"message": "to the moon"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid TradingView alert format"

    @pytest.mark.asyncio
    async def test_3commas(self, client, make_bot, session_factory):
        bot = await make_bot()

        response = await client.post(
            f"/api/webhooks/3commas/{bot.id}",
            json={"message_type": "exit", "pair": "BTC/USDT", "amount": 0.3},
        )

        assert response.status_code == 200
        signal = (await stored_signals(session_factory))[0]
        assert signal.signal_type == "close"
        assert signal.quantity == 0.3


class TestWebhookUrl:
    """Test GET /api/webhooks/url/{bot_id}."""

    @pytest.mark.asyncio
    async def test_signal_bot_urls(self, client, make_bot):
        bot = await make_bot(webhook_secret="s3cret")

        response = await client.get(f"/api/webhooks/url/{bot.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["webhook_urls"]["generic"].endswith(f"/api/webhooks/signal/{bot.id}")
        assert data["webhook_urls"]["tradingview"].endswith(f"/api/webhooks/tradingview/{bot.id}")
        assert data["signature_required"] is True
        assert "s3cret" not in response.text

    @pytest.mark.asyncio
    async def test_non_signal_bot(self, client, make_bot):
        bot = await make_bot(strategy_type="swing")

        response = await client.get(f"/api/webhooks/url/{bot.id}")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_bot(self, client):
        response = await client.get("/api/webhooks/url/9999")

        assert response.status_code == 404

    def test_base_url_trailing_slash(self):
        class _Bot:
            id = 5
            name = "Alerts"
            webhook_secret = None

        urls = webhook_urls(_Bot(), "https://bots.example.com/")

        assert urls["webhook_urls"]["3commas"] == "https://bots.example.com/api/webhooks/3commas/5"
        assert urls["signature_required"] is False
