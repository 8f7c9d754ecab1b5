"""
Database Configuration
======================

This module sets up:
1. SQLAlchemy engine (connection to SQLite or PostgreSQL)
2. SessionLocal (database session factory)
3. Base (declarative base for models)
4. get_db (one session per request, used as a FastAPI dependency)

Every state-changing storefront operation (checkout, payment verification,
cancellation) runs inside ONE session transaction: it either commits as a
whole or is rolled back as a whole.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from storefront import config

# ============================================================================
# SQLAlchemy ENGINE
# ============================================================================
# - connect_args={"check_same_thread": False}
#   SQLite only: request handlers run on a thread pool, so one connection may
#   be used by a thread other than the one that opened it.
#
# - pool_pre_ping=True
#   Tests connections before using them. If the database restarted,
#   SQLAlchemy reconnects instead of failing the request.


def build_engine(url: str, **kwargs):
    """Create an engine for ``url`` with the storefront's connection defaults."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(
        url,
        connect_args=connect_args,
        pool_pre_ping=True,
        echo=False,
        **kwargs,
    )

    if url.startswith("sqlite"):
        # SQLite ships with foreign keys disabled per connection
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = build_engine(config.DATABASE_URL)

# ============================================================================
# SESSION FACTORY
# ============================================================================
# autocommit=False: nothing is written until session.commit()
# autoflush=False:  we decide when pending changes are sent (db.flush())
# expire_on_commit=False: objects stay readable after commit, which lets the
#   services hand committed rows to the notifier without another SELECT

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)

# ============================================================================
# DECLARATIVE BASE
# ============================================================================

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
