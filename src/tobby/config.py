"""
Tobby - Runtime Configuration

Settings are read from environment variables. A local .env file is loaded on
import (python-dotenv) so development setups don't need exported variables.

Variables:
- TOBBY_DB_PATH: SQLite database file (default: src/tobby/data/tobby.db)
- SECRET_KEY: Flask secret key
- CRON_SECRET: bearer secret for the scheduler trigger route
- JOB_TIMEOUT_SECONDS: wall-clock budget for one generation run
- TOBBY_TIMEZONE: IANA zone used to decide what "today" is
- LOG_LEVEL: root log level
"""

import os
import logging
import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DB_PATH = Path(__file__).parent / "data" / "tobby.db"
DEFAULT_JOB_TIMEOUT = 300.0
DEFAULT_SECRET_KEY = 'dev-secret-key-change-in-production'
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def get_db_path():
    """Return the path to the SQLite database file"""
    return Path(os.getenv('TOBBY_DB_PATH') or DEFAULT_DB_PATH)


def get_secret_key():
    return os.getenv('SECRET_KEY', DEFAULT_SECRET_KEY)


def get_cron_secret():
    """Secret the external scheduler presents; None disables the trigger route."""
    return os.getenv('CRON_SECRET') or None


def get_job_timeout():
    raw = os.getenv('JOB_TIMEOUT_SECONDS')
    if not raw:
        return DEFAULT_JOB_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_JOB_TIMEOUT
    return value if value > 0 else DEFAULT_JOB_TIMEOUT


def today():
    """
    Current calendar date with no time-of-day component.

    Uses TOBBY_TIMEZONE when set, otherwise the server's local clock.
    """
    tz_name = os.getenv('TOBBY_TIMEZONE')
    if tz_name:
        return datetime.datetime.now(ZoneInfo(tz_name)).date()
    return datetime.date.today()


def configure_logging(level=None):
    """Install a single stream handler on the root logger (safe to call twice)."""
    level = level or os.getenv('LOG_LEVEL', 'INFO')
    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)
    if not any(getattr(h, '_tobby', False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._tobby = True
        root.addHandler(handler)
