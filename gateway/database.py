from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from gateway.config import settings

engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
Base = declarative_base()


def init_db(bind=None) -> None:
    """Create missing tables."""
    import gateway.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
