# laundry/db.py
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

metadata = MetaData()

# BIGINT ids on Postgres; SQLite only auto-increments INTEGER PRIMARY KEY
_id_type = BigInteger().with_variant(Integer(), "sqlite")

jobs = Table(
    "jobs",
    metadata,
    Column("id", _id_type, primary_key=True, autoincrement=True),
    Column("customer_name", Text, nullable=False),
    Column("address", Text, nullable=False),
    Column("notes", Text, nullable=False, server_default=""),
    Column("price_cents", Integer, nullable=False),
    Column("customer_id", Text, nullable=True),
    Column("status", String(16), nullable=False, index=True),
    Column("washer_id", Text, nullable=True),
    Column("payment_reference", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

job_transitions = Table(
    "job_transitions",
    metadata,
    Column("id", _id_type, primary_key=True, autoincrement=True),
    Column("job_id", _id_type, ForeignKey("jobs.id"), nullable=False, index=True),
    Column("from_status", String(16), nullable=True),
    Column("to_status", String(16), nullable=False),
    Column("actor_id", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

settlement_events = Table(
    "settlement_events",
    metadata,
    Column("id", _id_type, primary_key=True, autoincrement=True),
    Column("job_id", _id_type, ForeignKey("jobs.id"), nullable=False, index=True),
    Column("payment_reference", Text, nullable=False),
    Column("amount_cents", Integer, nullable=False),
    Column("reason", Text, nullable=False),
    Column("state", String(16), nullable=False, index=True),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    # one event per charge, however many paths report it
    UniqueConstraint("job_id", "payment_reference", name="uq_settlement_events_job_ref"),
)


def make_engine(db_url: str) -> AsyncEngine:
    if not db_url:
        raise RuntimeError("SUPABASE_DB_URL is not set")
    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=False)
    return create_async_engine(db_url, echo=False, pool_size=5, max_overflow=10)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
