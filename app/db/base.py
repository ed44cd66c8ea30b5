"""
Database engine, session factory and declarative base.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from app.core.config import settings

if settings.DATABASE_URL.startswith("sqlite"):
    # Local development and tests
    sqlite_kwargs = {"connect_args": {"check_same_thread": False}}
    if settings.DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        # In-memory database: every session must share the one connection
        sqlite_kwargs["poolclass"] = StaticPool
    engine = create_engine(settings.DATABASE_URL, **sqlite_kwargs)
elif settings.ENV == "production":
    # Behind a transaction-mode pooler; keep statements short so row locks
    # taken while reconciling payments are never held for long
    engine = create_engine(
        settings.DATABASE_URL,
        poolclass=NullPool,
        pool_pre_ping=True,
        connect_args={
            "options": "-c statement_timeout=30000"
        }
    )
else:
    engine = create_engine(
        settings.DATABASE_URL,
        pool_size=5,
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=3600
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()
