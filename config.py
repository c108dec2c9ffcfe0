"""Application configuration."""

import os
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# Chain transport
RPC_PRIMARY = os.getenv("RPC_PRIMARY", "").strip()
RPC_SECONDARY = os.getenv("RPC_SECONDARY", "").strip()
RPC_TIMEOUT_SECONDS = max(3, int(os.getenv("RPC_TIMEOUT_SECONDS", "10")))
CHAIN_POLL_INTERVAL_SECONDS = max(0.5, float(os.getenv("CHAIN_POLL_INTERVAL_SECONDS", "2")))
CHAIN_BLOCK_CHUNK = max(1, int(os.getenv("CHAIN_BLOCK_CHUNK", "500")))
CHAIN_FINALITY_BLOCKS = max(0, int(os.getenv("CHAIN_FINALITY_BLOCKS", "0")))

# Contracts
FACTORY_ADDRESS = os.getenv("FACTORY_ADDRESS", "").strip().lower()
ROUTER_ADDRESS = os.getenv("ROUTER_ADDRESS", "").strip().lower()
# Wrapped native token (WBNB/WETH). Empty disables the base-asset pair filter;
# liquidity quotes then use the router's WETH().
BASE_ASSET_ADDRESS = os.getenv("BASE_ASSET_ADDRESS", "").strip().lower()

# Executor service
EXECUTOR_URL = os.getenv("EXECUTOR_URL", "http://127.0.0.1:8080").strip().rstrip("/")
EXECUTOR_TIMEOUT_SECONDS = max(1.0, float(os.getenv("EXECUTOR_TIMEOUT_SECONDS", "30")))
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))

# Dispatch queue
DISPATCH_CONCURRENCY = max(1, int(os.getenv("DISPATCH_CONCURRENCY", "3")))
DISPATCH_POLL_INTERVAL_SECONDS = max(0.01, float(os.getenv("DISPATCH_POLL_INTERVAL_SECONDS", "0.3")))
# 0 keeps the pending queue unbounded.
DISPATCH_QUEUE_MAX = max(0, int(os.getenv("DISPATCH_QUEUE_MAX", "0")))

# Pair watcher / buy defaults
WATCH_TIMEOUT_SECONDS = max(1.0, float(os.getenv("WATCH_TIMEOUT_SECONDS", "120")))
BUY_AMOUNT_BNB = os.getenv("BUY_AMOUNT_BNB", "0.02").strip()
SLIPPAGE = min(1.0, max(0.0, float(os.getenv("SLIPPAGE", "0.30"))))
DEADLINE_SECS = max(1, int(os.getenv("DEADLINE_SECS", "60")))
PREBUY_QUOTE_AMOUNT_NATIVE = os.getenv("PREBUY_QUOTE_AMOUNT_NATIVE", "0.001").strip()

# Volume aggregator
VOLUME_ALERT_THRESHOLD = max(0.0, float(os.getenv("VOLUME_ALERT_THRESHOLD", "5")))
VOLUME_WINDOW_SECONDS = max(1.0, float(os.getenv("VOLUME_WINDOW_SECONDS", "300")))

# Runtime
ENABLE_SNIPER = _env_flag("ENABLE_SNIPER")
ENABLE_VOLUME_MONITOR = _env_flag("ENABLE_VOLUME_MONITOR")
STATUS_LOG_INTERVAL_SECONDS = max(5, int(os.getenv("STATUS_LOG_INTERVAL_SECONDS", "60")))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
