from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import settings


def make_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    # check_same_thread=False is required for SQLite under FastAPI's threadpool;
    # timeout is the busy-wait a writer spends behind a concurrent commit
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # Foreign keys are off by default in SQLite
    @event.listens_for(engine, "connect")
    def enable_sqlite_fk(dbapi_connection, _):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


engine = make_engine(settings.resolved_database_url)

# SessionLocal is the main way to talk to the database
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables that do not exist yet."""
    from .models.tables import Base

    Base.metadata.create_all(bind=bind or engine)


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
