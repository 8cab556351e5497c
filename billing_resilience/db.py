from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
from sqlalchemy.engine import Engine
import structlog

from billing_resilience.core.config import settings

logger = structlog.get_logger(__name__)

DATABASE_URL = settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
        )

    return create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min
        pool_timeout=30,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )


engine = build_engine(DATABASE_URL)


@event.listens_for(Engine, "connect")
def set_statement_timeout(dbapi_connection, connection_record):
    """Cap query time on PostgreSQL connections."""
    module = type(dbapi_connection).__module__
    if not module.startswith("psycopg"):
        return
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning("Could not set statement timeout", error=str(e))
    finally:
        cursor.close()


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables(bind: Engine | None = None):
    # Import models so their tables are registered on the metadata
    from billing_resilience import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
