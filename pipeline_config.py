import os
import sys
import logging
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone, timedelta
from typing import Optional

from dateutil import parser as dateparser

# --------------------------
# Configuration and Defaults
# --------------------------
BINANCE_DATA_BASE_URL = os.environ.get("BINANCE_DATA_BASE_URL", "https://data.binance.vision/data/spot")
# Local archive cache root: {DATA_ROOT}/{SYMBOL}/1s/{monthly|daily}/{filename}.zip
DATA_ROOT = os.environ.get("KLINE_DATA_ROOT", os.path.join("data", "binance"))
STORE_PATH = os.environ.get("KLINE_STORE_PATH", os.path.join(DATA_ROOT, "klines_1s.sqlite"))

HTTP_TIMEOUT_MS = int(os.environ.get("KLINE_HTTP_TIMEOUT_MS", "15000"))
# Additional attempts after the first failed fetch
MAX_RETRIES = int(os.environ.get("KLINE_MAX_RETRIES", "2"))
RETRY_BACKOFF_MS = int(os.environ.get("KLINE_RETRY_BACKOFF_MS", "200"))
VERIFY_CHECKSUM = os.environ.get("KLINE_VERIFY_CHECKSUM", "1") in ("1", "true", "TRUE", "yes", "YES")

LOG_DIR = os.environ.get("KLINE_LOG_DIR", os.path.join("logs"))
LOG_FILE = os.path.join(LOG_DIR, "pipeline.log")
LOGGER_NAME = "klineloader"

STEP_MS = 1_000
MAX_REPORTED_GAP_RANGES = 256

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class HistoricalKlinesConfig:
    data_root: str = DATA_ROOT
    http_timeout_ms: int = HTTP_TIMEOUT_MS
    max_retries: int = MAX_RETRIES
    retry_backoff_ms: int = RETRY_BACKOFF_MS
    verify_checksum: bool = VERIFY_CHECKSUM
    base_url: str = BINANCE_DATA_BASE_URL

    @staticmethod
    def from_env() -> "HistoricalKlinesConfig":
        """Re-read the environment; module constants are frozen at import time."""
        def _env_bool(key: str, default: bool) -> bool:
            raw = os.getenv(key)
            if raw is None:
                return default
            return raw.strip().lower() in {"1", "true", "yes", "on"}

        return HistoricalKlinesConfig(
            data_root=os.getenv("KLINE_DATA_ROOT", os.path.join("data", "binance")),
            http_timeout_ms=int(os.getenv("KLINE_HTTP_TIMEOUT_MS", "15000")),
            max_retries=int(os.getenv("KLINE_MAX_RETRIES", "2")),
            retry_backoff_ms=int(os.getenv("KLINE_RETRY_BACKOFF_MS", "200")),
            verify_checksum=_env_bool("KLINE_VERIFY_CHECKSUM", True),
            base_url=os.getenv("BINANCE_DATA_BASE_URL", "https://data.binance.vision/data/spot"),
        )


# --------------------------
# Logging
# --------------------------

def get_logger(logger: Optional[logging.Logger] = None) -> logging.Logger:
    return logger if logger is not None else logging.getLogger(LOGGER_NAME)


def shutdown_logging():
    """Close and remove all handlers attached to the pipeline logger to prevent file descriptor leaks."""
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        try:
            h.flush()
            h.close()
        except (OSError, ValueError):
            pass
        logger.removeHandler(h)


def setup_logging(verbose: bool = True, log_file: Optional[str] = None) -> logging.Logger:
    log_file = log_file or LOG_FILE
    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    # Avoid duplicate handlers if setup_logging is called multiple times
    if logger.handlers:
        shutdown_logging()
    formatter = logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    fh = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    if verbose:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(logging.INFO)
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    import atexit
    atexit.register(shutdown_logging)
    return logger


# --------------------------
# Time helpers
# --------------------------

def iso_to_ms(iso_str: str) -> int:
    dt = dateparser.isoparse(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def ms_to_datetime(ms: int) -> datetime:
    """UTC datetime for a millisecond timestamp. Raises OverflowError outside the calendar range."""
    return _EPOCH + timedelta(milliseconds=ms)


def datetime_to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def ms_to_iso(ms: int) -> str:
    return ms_to_datetime(ms).isoformat()


def utc_now_ms() -> int:
    return datetime_to_ms(datetime.now(timezone.utc))


def expected_points(start_ms: int, end_ms_exclusive: int) -> int:
    if end_ms_exclusive <= start_ms:
        return 0
    return (end_ms_exclusive - start_ms) // STEP_MS
