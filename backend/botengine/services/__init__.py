# Business Logic Services

from .config import (
    ConfigService,
    config_service,
    ConfigValidationException,
    ConfigValidationError,
    EngineSettings,
)
from .logging_service import (
    BotLoggingService,
    TradeLogEntry,
    setup_logging,
)
from .exchanges import (
    ExchangeClient,
    ExchangeConnector,
    ExchangeConnectionError,
    ExchangeApiError,
    SimulatedExchangeClient,
)
from .strategies import (
    Strategy,
    StrategyConfig,
    ProposedSignal,
    MarketSnapshot,
    BotState,
    UnsupportedStrategyError,
    StrategyConfigError,
    create_strategy,
)
from .performance import (
    PerformanceService,
    PerformanceSnapshot,
    Position,
    compute_performance,
)
from .bot_registry import BotHandle, BotRegistry, OpenOrder
from .signal_processor import (
    SignalProcessor,
    ProcessResult,
    UnknownSignalTypeError,
    BotNotRunningError,
    SignalRejectedError,
    BOT_NOT_RUNNING,
)
from .scheduler import PeriodicJob, JobScheduler
from .bot_supervisor import BotSupervisor, ControlResult
from .maintenance import MaintenanceService
from .webhooks import (
    WebhookService,
    WebhookValidationError,
    build_signal,
    parse_tradingview_alert,
    convert_3commas_payload,
    verify_signature,
)

__all__ = [
    # Config
    "ConfigService",
    "config_service",
    "ConfigValidationException",
    "ConfigValidationError",
    "EngineSettings",
    # Logging
    "BotLoggingService",
    "TradeLogEntry",
    "setup_logging",
    # Exchanges
    "ExchangeClient",
    "ExchangeConnector",
    "ExchangeConnectionError",
    "ExchangeApiError",
    "SimulatedExchangeClient",
    # Strategies
    "Strategy",
    "StrategyConfig",
    "ProposedSignal",
    "MarketSnapshot",
    "BotState",
    "UnsupportedStrategyError",
    "StrategyConfigError",
    "create_strategy",
    # Performance
    "PerformanceService",
    "PerformanceSnapshot",
    "Position",
    "compute_performance",
    # Registry / Supervisor
    "BotHandle",
    "BotRegistry",
    "OpenOrder",
    "BotSupervisor",
    "ControlResult",
    # Signals
    "SignalProcessor",
    "ProcessResult",
    "UnknownSignalTypeError",
    "BotNotRunningError",
    "SignalRejectedError",
    "BOT_NOT_RUNNING",
    # Scheduling
    "PeriodicJob",
    "JobScheduler",
    "MaintenanceService",
    # Webhooks
    "WebhookService",
    "WebhookValidationError",
    "build_signal",
    "parse_tradingview_alert",
    "convert_3commas_payload",
    "verify_signature",
]
