from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import DATABASE_URL


def make_engine(url: str, pool_size: Optional[int] = None):
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # sessions are handed across worker threads
        kwargs["connect_args"] = {"check_same_thread": False}
    elif pool_size:
        kwargs["pool_size"] = pool_size
    return create_engine(url, **kwargs)


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db(bind=None):
    from . import models  # noqa: F401  registers tables on Base

    Base.metadata.create_all(bind=bind or engine)


# Dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
