"""Bot control router."""

from datetime import datetime
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session, Bot, BotStatus, Signal, Trade
from ..services.bot_supervisor import BotSupervisor, ControlResult
from ..services.webhooks import WebhookService, WebhookValidationError
from .deps import get_supervisor, get_webhook_service

router = APIRouter()


# Pydantic schemas
class BotResponse(BaseModel):
    """Schema for bot response."""
    id: int
    user_id: str
    name: str
    exchange_id: int
    api_key_id: int
    strategy_type: str
    trading_pair: str
    config: dict
    status: str
    error_message: Optional[str]
    total_trades: int
    total_profit: float
    win_rate: float
    current_balance: float
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    started_at: Optional[datetime]
    stopped_at: Optional[datetime]
    last_trade_at: Optional[datetime]

    class Config:
        from_attributes = True


class SignalCreate(BaseModel):
    """Schema for submitting a signal through the control API."""
    action: str = Field(..., min_length=1, max_length=20)
    symbol: str = Field(..., min_length=1, max_length=50)
    price: Optional[float] = Field(default=None, gt=0)
    quantity: Optional[float] = Field(default=None, gt=0)
    take_profit: Optional[float] = Field(default=None, gt=0)
    stop_loss: Optional[float] = Field(default=None, gt=0)
    leverage: Optional[int] = Field(default=None, ge=1, le=125)


class SignalResponse(BaseModel):
    """Schema for signal response."""
    id: int
    bot_id: int
    signal_type: str
    symbol: str
    price: Optional[float]
    quantity: Optional[float]
    take_profit: Optional[float]
    stop_loss: Optional[float]
    leverage: Optional[int]
    processed: bool
    processed_at: Optional[datetime]
    error_message: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class TradeResponse(BaseModel):
    """Schema for trade response."""
    id: int
    bot_id: int
    signal_id: Optional[int]
    exchange_order_id: Optional[str]
    symbol: str
    side: str
    type: str
    quantity: float
    price: Optional[float]
    executed_price: float
    executed_quantity: float
    fee: float
    fee_currency: Optional[str]
    status: str
    profit_loss: Optional[float]
    is_futures: bool
    leverage: int
    executed_at: datetime

    class Config:
        from_attributes = True


class PerformanceResponse(BaseModel):
    """Schema for recomputed performance counters."""
    bot_id: int
    total_trades: int
    total_profit: float
    win_rate: float


class StopAllResponse(BaseModel):
    stopped: int
    failed: Dict[int, str]


async def _get_bot_or_404(session: AsyncSession, bot_id: int) -> Bot:
    result = await session.execute(select(Bot).where(Bot.id == bot_id))
    bot = result.scalar_one_or_none()

    if not bot:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Bot with id {bot_id} not found"
        )
    return bot


async def _control_response(session: AsyncSession, bot_id: int, outcome: ControlResult) -> Bot:
    if not outcome.success:
        code = status.HTTP_404_NOT_FOUND if outcome.error == "Bot not found" else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=code, detail=outcome.error)

    bot = await _get_bot_or_404(session, bot_id)
    await session.refresh(bot)
    return bot


@router.get("", response_model=List[BotResponse])
async def list_bots(
    session: AsyncSession = Depends(get_session),
    status_filter: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List all bots with optional filtering."""
    query = select(Bot)
    if status_filter:
        try:
            query = query.where(Bot.status == BotStatus(status_filter.lower()))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status: {status_filter}"
            )
    query = query.order_by(Bot.id).offset(skip).limit(limit)

    result = await session.execute(query)
    return result.scalars().all()


@router.post("/stop-all", response_model=StopAllResponse)
async def stop_all_bots(supervisor: BotSupervisor = Depends(get_supervisor)):
    """Global kill switch - stop every active bot and cancel its open orders."""
    results = await supervisor.stop_all()
    return StopAllResponse(
        stopped=sum(1 for r in results.values() if r.success),
        failed={bot_id: r.error for bot_id, r in results.items() if not r.success},
    )


@router.get("/{bot_id}", response_model=BotResponse)
async def get_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
):
    """Get a specific bot by ID."""
    return await _get_bot_or_404(session, bot_id)


@router.post("/{bot_id}/start", response_model=BotResponse)
async def start_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    supervisor: BotSupervisor = Depends(get_supervisor),
):
    """Start a bot, or resume it if paused."""
    outcome = await supervisor.start_bot(bot_id)
    return await _control_response(session, bot_id, outcome)


@router.post("/{bot_id}/pause", response_model=BotResponse)
async def pause_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    supervisor: BotSupervisor = Depends(get_supervisor),
):
    """Pause a running bot."""
    outcome = await supervisor.pause_bot(bot_id)
    return await _control_response(session, bot_id, outcome)


@router.post("/{bot_id}/stop", response_model=BotResponse)
async def stop_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    supervisor: BotSupervisor = Depends(get_supervisor),
):
    """Stop a bot, cancelling its open orders."""
    outcome = await supervisor.stop_bot(bot_id)
    return await _control_response(session, bot_id, outcome)


@router.get("/{bot_id}/signals", response_model=List[SignalResponse])
async def list_signals(
    bot_id: int,
    processed: Optional[bool] = None,
    limit: int = 100,
    session: AsyncSession = Depends(get_session),
):
    """List a bot's signals, newest first."""
    await _get_bot_or_404(session, bot_id)

    query = select(Signal).where(Signal.bot_id == bot_id)
    if processed is not None:
        query = query.where(Signal.processed == processed)
    query = query.order_by(Signal.created_at.desc(), Signal.id.desc()).limit(limit)

    result = await session.execute(query)
    return result.scalars().all()


@router.post("/{bot_id}/signals", status_code=status.HTTP_201_CREATED)
async def create_signal(
    bot_id: int,
    signal_data: SignalCreate,
    request: Request,
    session: AsyncSession = Depends(get_session),
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Queue a signal for a bot."""
    bot = await _get_bot_or_404(session, bot_id)

    payload = signal_data.model_dump(exclude_none=True)
    payload["source"] = "api"
    try:
        signal_id = await webhooks.enqueue_signal(
            bot_id,
            payload,
            source_ip=request.client.host if request.client else None,
            user_id=bot.user_id,
        )
    except WebhookValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {"success": True, "signal_id": signal_id}


@router.get("/{bot_id}/trades", response_model=List[TradeResponse])
async def list_trades(
    bot_id: int,
    limit: int = 100,
    session: AsyncSession = Depends(get_session),
):
    """List a bot's trades, newest first."""
    await _get_bot_or_404(session, bot_id)

    result = await session.execute(
        select(Trade)
        .where(Trade.bot_id == bot_id)
        .order_by(Trade.executed_at.desc(), Trade.id.desc())
        .limit(limit)
    )
    return result.scalars().all()


@router.post("/{bot_id}/performance", response_model=PerformanceResponse)
async def recompute_performance(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    supervisor: BotSupervisor = Depends(get_supervisor),
):
    """Recompute a bot's counters from its trade history."""
    await _get_bot_or_404(session, bot_id)

    snapshot = await supervisor.performance.recompute(bot_id)
    handle = supervisor.registry.get(bot_id)
    if handle is not None:
        handle.apply_performance(snapshot)

    return PerformanceResponse(
        bot_id=bot_id,
        total_trades=snapshot.total_trades,
        total_profit=snapshot.total_profit,
        win_rate=snapshot.win_rate,
    )
