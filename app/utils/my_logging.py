# app/utils/my_logging.py
"""Process-wide logging setup shared by the API and the Celery worker"""
import logging
import sys
from app.config.settings import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that drown out sync activity at INFO
LIBRARY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "alembic",
    "httpx",
    "urllib3",
    "caldav",
    "googleapiclient",
    "celery",
    "uvicorn.access",
)


def setup_logging(verbose=True):
    """
    Route all records to stdout at LOG_LEVEL.

    With verbose=False only WARNING and up from our own modules get through and
    the library loggers above are cut down to errors.
    """
    settings = get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO) if verbose else logging.WARNING

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])

    # googleapiclient logs every discovery cache miss at WARNING
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)

    if verbose:
        return
    for name in LIBRARY_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.setLevel(logging.ERROR)
        library_logger.propagate = False
