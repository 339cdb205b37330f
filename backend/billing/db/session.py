"""Database engine and session management"""
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from billing.models import Base
from billing.core.config import settings


def engine_options(database_url: str) -> dict:
    """create_engine() keyword arguments for a database URL"""
    if make_url(database_url).get_backend_name() == "sqlite":
        # Webhooks are processed in worker threads, not on the thread that opened the connection
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


engine = create_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create billing tables that do not exist yet (migrations own schema changes)"""
    Base.metadata.create_all(bind=engine)
