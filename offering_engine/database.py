"""Database connection and session factory.

Every timestamp column uses UTCDateTime so values read back from the
store are timezone-aware UTC, even on backends that drop tzinfo.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, TypeDecorator, create_engine, event
from sqlalchemy.orm import sessionmaker

from .config import settings


class UTCDateTime(TypeDecorator):
    """DateTime type that ensures UTC timezone on load."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_is_postgres = settings.database_url.startswith(("postgresql", "postgres://"))

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    **(
        {
            "pool_size": 10,
            "max_overflow": 20,
            "pool_recycle": 3600,
            "connect_args": {"connect_timeout": 10},
        }
        if _is_postgres
        else {}
    ),
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


if _is_postgres:

    @event.listens_for(engine, "connect")
    def _set_timezone(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("SET timezone = 'UTC'")
        cursor.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
