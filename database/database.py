import os
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.models import Base

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL")

engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def init_database(url: Optional[str] = None, echo: bool = False, create_tables: bool = True) -> Engine:
    """
    Bind SessionLocal to `url` (default: DATABASE_URL).

    In-memory SQLite shares one connection across threads so every session
    sees the same database.
    """
    global engine
    url = url or DATABASE_URL
    if not url:
        raise RuntimeError("No database URL configured (set database.url or DATABASE_URL)")

    if url == "sqlite://" or (url.startswith("sqlite") and ":memory:" in url):
        engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    elif url.startswith("sqlite"):
        engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url, echo=echo, pool_pre_ping=True)

    SessionLocal.configure(bind=engine)
    if create_tables:
        Base.metadata.create_all(engine)
    logger.info(f"Database initialised ({engine.url.render_as_string(hide_password=True)})")
    return engine

