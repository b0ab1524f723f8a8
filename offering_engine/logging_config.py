"""
logging_config.py — Centralized Logging Configuration for the Offering Engine

Sets up Loguru as the single logging backend. Intercepts Python's stdlib
logging module so SQLAlchemy, Alembic and uvicorn records route through
Loguru with the same format and level.

Business Rules:
- All logs go through Loguru (no direct print() or stdlib logging)
- JSON lines in production (APP_ENV=production), stdout plus a rotated file
  under LOG_DIR
- Human-readable format in development, tagged with the request id that
  main.py binds via logger.contextualize()
- Log rotation: 50MB files, 7-day retention
- SQL statements are only logged when LOG_SQL is set; price and version
  decisions are logged by the services themselves

Called by: offering_engine/main.py (on startup)
Depends on: offering_engine/config.py (app_env, log_level, log_dir, log_sql)
"""

import logging
import os
import sys

from loguru import logger

from .config import Settings

# Filled per request by the X-Request-ID middleware
_NO_REQUEST = "-"

_DEV_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[request_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "{message}"
)

_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def setup_logging(config: Settings | None = None) -> None:
    """Configure Loguru and intercept stdlib logging.

    Reads a fresh Settings by default so LOG_* variables set after import
    still apply. Call once at app startup.
    """
    config = config or Settings()
    logger.remove()
    logger.configure(extra={"request_id": _NO_REQUEST})

    log_level = config.log_level.upper()

    if config.is_production:
        # Production: JSON lines to stdout for the container runtime
        logger.add(sys.stdout, level=log_level, format="{message}", serialize=True)
        logger.add(
            os.path.join(config.log_dir, "engine.log"),
            level=log_level,
            rotation="50 MB",
            retention="7 days",
            compression="gz",
            serialize=True,
        )
    else:
        logger.add(sys.stdout, level=log_level, format=_DEV_FORMAT, colorize=True)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if config.log_sql else logging.WARNING
    )

    logger.info(
        "Logging configured",
        level=log_level,
        production=config.is_production,
        log_sql=config.log_sql,
    )


class _InterceptHandler(logging.Handler):
    """Route stdlib logging records to Loguru.

    SQLAlchemy and Alembic log through the stdlib; this keeps their records
    in the same sinks as the engine's own messages.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip frames inside the logging module itself
        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )
