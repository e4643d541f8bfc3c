"""Logging setup and per-bot file logging."""

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union
from dataclasses import dataclass, fields

logger = logging.getLogger(__name__)

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Base logs directory
LOGS_BASE_DIR = Path(__file__).parent.parent.parent / "logs"


def setup_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    """Configure the root logger for the service process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt or DEFAULT_LOG_FORMAT,
        force=True,
    )
    # aiosqlite/ccxt are chatty at DEBUG
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("ccxt").setLevel(logging.WARNING)


@dataclass
class TradeLogEntry:
    """One row of a bot's trades.csv. Column order follows field order."""
    timestamp: datetime
    bot_id: int
    bot_name: str
    signal_id: Optional[int]
    exchange_order_id: str
    symbol: str
    side: str
    order_type: str
    quantity: float
    executed_price: float
    executed_quantity: float
    fee: float
    status: str
    profit_loss: Optional[float] = None

    @classmethod
    def header(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def as_row(self) -> List[str]:
        row = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                row.append("")
            elif isinstance(value, datetime):
                row.append(value.isoformat())
            elif f.name == "profit_loss":
                row.append(f"{value:.2f}")
            elif isinstance(value, float):
                row.append(f"{value:.8f}")
            else:
                row.append(str(value))
        return row


class BotLoggingService:
    """Writes a bot's activity.log and trades.csv under <base_dir>/<bot_id>/.

    Write failures are logged and swallowed; a full disk must not stop a bot.
    """

    def __init__(self, bot_id: int, bot_name: str = "", base_dir: Optional[Union[str, Path]] = None):
        self.bot_id = bot_id
        self.bot_name = bot_name
        self.bot_log_dir = Path(base_dir or LOGS_BASE_DIR) / str(bot_id)

        try:
            self.bot_log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to create log directory {self.bot_log_dir}: {e}")

    def log_trade(self, entry: TradeLogEntry) -> None:
        """Append a trade to the bot's trades.csv."""
        log_file = self.bot_log_dir / "trades.csv"
        new_file = not log_file.exists()

        try:
            with open(log_file, "a", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                if new_file:
                    writer.writerow(TradeLogEntry.header())
                writer.writerow(entry.as_row())
        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to log trade {entry.exchange_order_id}: {e}")
            return

        logger.debug(f"Bot {self.bot_id}: Logged trade {entry.exchange_order_id} to {log_file.name}")

    def log_activity(self, message: str, level: str = "INFO") -> None:
        """Append a timestamped line to the bot's activity.log."""
        try:
            with open(self.bot_log_dir / "activity.log", "a", encoding="utf-8") as f:
                f.write(f"{datetime.utcnow().isoformat()} [{level}] {message}\n")
        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to log activity: {e}")
