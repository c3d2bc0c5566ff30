import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        edit_window_secs: int,
        default_brief_time: str,
        dispatch_timeout_secs: float,
        lock_timeout_secs: float,
        allow_pocket_overdraft: bool,
        dispatcher: str,
        currency_symbol: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.edit_window_secs = edit_window_secs
        self.default_brief_time = default_brief_time
        self.dispatch_timeout_secs = dispatch_timeout_secs
        self.lock_timeout_secs = lock_timeout_secs
        self.allow_pocket_overdraft = allow_pocket_overdraft
        self.dispatcher = dispatcher
        self.currency_symbol = currency_symbol


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Asia/Kolkata")
    edit_window_secs = int(os.getenv("LEDGER_EDIT_WINDOW_SECS", "3600"))
    default_brief_time = os.getenv("LEDGER_DEFAULT_BRIEF_TIME", "20:00")
    dispatch_timeout_secs = float(os.getenv("LEDGER_DISPATCH_TIMEOUT_SECS", "5"))
    lock_timeout_secs = float(os.getenv("LEDGER_LOCK_TIMEOUT_SECS", "10"))
    allow_pocket_overdraft = _env_flag("LEDGER_ALLOW_POCKET_OVERDRAFT")
    dispatcher = os.getenv("LEDGER_DISPATCHER", "inapp").lower()
    currency_symbol = os.getenv("LEDGER_CURRENCY_SYMBOL", "₹")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        edit_window_secs=edit_window_secs,
        default_brief_time=default_brief_time,
        dispatch_timeout_secs=dispatch_timeout_secs,
        lock_timeout_secs=lock_timeout_secs,
        allow_pocket_overdraft=allow_pocket_overdraft,
        dispatcher=dispatcher,
        currency_symbol=currency_symbol,
    )
