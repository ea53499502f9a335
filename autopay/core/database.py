"""
Storage layer for the autopay backend.

Tables (SQLAlchemy Core):
- subscriptions: recurring token transfers owned by a wallet
- payment_logs: one row per charge attempt made by the payments job
- billing_plans / plan_subscriptions: creator plans and who pays for them
- activity_log: append-only timeline shown on the creator dashboard

All timestamps are stored timezone-aware; SQLite hands them back naive, so
read paths go through as_utc().
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional
import logging
import os

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    JSON,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    inspect,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from autopay.core.config import settings


logger = logging.getLogger("autopay")

metadata = MetaData()

ADDRESS = String(100)
UUID_STR = String(36)


def _created_at() -> Column:
    return Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False)


subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", UUID_STR, primary_key=True),
    Column("user_address", ADDRESS, nullable=False, index=True),
    Column("recipient_address", ADDRESS, nullable=False),
    Column("token_amount", BigInteger, nullable=False),  # minor units
    Column("token_symbol", String(20), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("next_payment_date", DateTime(timezone=True), nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    _created_at(),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index("idx_subscriptions_user_created", "user_address", "created_at"),
    # payments job scans active rows by due date
    Index("idx_subscriptions_status_next", "status", "next_payment_date"),
)

payment_logs = Table(
    "payment_logs",
    metadata,
    Column("id", UUID_STR, primary_key=True),
    Column("subscription_id", UUID_STR, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("transaction_hash", String(100), nullable=True),
    Column("status", String(20), nullable=False, index=True),  # success | failed | pending
    Column("error_message", Text, nullable=True),
    Column("amount", BigInteger, nullable=False),
    Column("token_symbol", String(20), nullable=False, server_default="USDC"),
    _created_at(),
)

billing_plans = Table(
    "billing_plans",
    metadata,
    Column("id", UUID_STR, primary_key=True),
    Column("plan_id", String(100), nullable=False, unique=True),
    Column("creator_address", ADDRESS, nullable=False, index=True),
    Column("name", Text, nullable=False),
    Column("description", Text, nullable=True),
    Column("amount", BigInteger, nullable=False),
    Column("interval", String(20), nullable=False),  # monthly | yearly
    Column("recipient_wallet", ADDRESS, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True, index=True),
    Column("contract_address", ADDRESS, nullable=True),
    _created_at(),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
)

plan_subscriptions = Table(
    "plan_subscriptions",
    metadata,
    Column("id", UUID_STR, primary_key=True),
    Column("plan_id", String(100), ForeignKey("billing_plans.plan_id", ondelete="CASCADE"), nullable=False, index=True),
    Column("subscriber_address", ADDRESS, nullable=False, index=True),
    Column("next_payment_due", DateTime(timezone=True), nullable=False, index=True),
    Column("is_active", Boolean, nullable=False, default=True),
    _created_at(),
    Column("last_payment_at", DateTime(timezone=True), nullable=True),
    UniqueConstraint("plan_id", "subscriber_address", name="uq_plan_subscriptions_plan_subscriber"),
)

activity_log = Table(
    "activity_log",
    metadata,
    Column("id", UUID_STR, primary_key=True),
    Column("event_type", String(50), nullable=False),
    Column("plan_id", String(100), nullable=True, index=True),
    Column("plan_subscription_id", UUID_STR, nullable=True),
    Column("actor_address", ADDRESS, nullable=True, index=True),
    Column("target_address", ADDRESS, nullable=True),
    Column("description", Text, nullable=True),
    Column("details", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False, index=True),
)


_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _resolve_url(override: Optional[str]) -> str:
    url = override or os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set it in the environment or .env file.")
    return url


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # in-memory databases live only as long as their single connection
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }


def init_engine(database_url: Optional[str] = None) -> Engine:
    """Build the process-wide engine and session factory, replacing any previous one."""
    global _engine, _SessionLocal
    url = _resolve_url(database_url)
    _engine = create_engine(url, echo=False, **_engine_options(url))
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Unit of work: commit on success, roll back and re-raise on any error."""
    if _SessionLocal is None:
        init_engine()
    session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Tests and local resets only."""
    metadata.drop_all(bind=get_engine())


def missing_tables() -> List[str]:
    """Names of known tables the connected database lacks. Raises if the database is unreachable."""
    engine = get_engine()
    with engine.connect() as conn:
        conn.exec_driver_sql("SELECT 1")
    inspector = inspect(engine)
    return [name for name in sorted(metadata.tables) if not inspector.has_table(name)]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to aware UTC. Naive values read back from a store are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
