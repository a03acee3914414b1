import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from app.core.config import settings
from app.db.base import Base
from fastapi import HTTPException

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        # sync endpoints run in the threadpool
        return {"check_same_thread": False}
    return {"connect_timeout": 30}


# Create the SQLAlchemy engine
engine = create_engine(settings.DATABASE_URL,
                       connect_args=_connect_args(settings.DATABASE_URL),
                       pool_pre_ping=True,
                       pool_recycle=3600,
)

# Create a configured "Session" class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# do not change the order of the code below
# Dependency that can be used in routes to get the session
def get_db() -> Session  |  HTTPException:
    db = SessionLocal()  # generate a new SessionLocal
    try:
        yield db
    except Exception as e:
        if isinstance(e, HTTPException):
            raise e
        else:
            logger.exception("database session error")
            raise HTTPException(status_code=500, detail="Query data error")
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create the auth and activity tables if they do not exist yet."""
    # models register themselves on Base.metadata when imported
    import app.models.activity  # noqa: F401
    import app.models.auth  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
