"""Database models and connection helpers for the PnL history."""

from collections.abc import Sequence
from decimal import Decimal

from typing import Any

from sqlalchemy import JSON, BigInteger, Numeric, String, inspect
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Mapped, declarative_base, mapped_column


Base = declarative_base()


class PnLRecordDB(Base):
    """One emitted PnL record, keyed by chain, wallet, block and group."""

    __tablename__ = "pnl_records"

    chain: Mapped[str] = mapped_column(String(32), primary_key=True)
    wallet: Mapped[str] = mapped_column(String(128), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, primary_key=True, index=True)
    group_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    address: Mapped[str] = mapped_column(String(42), index=True)
    pattern: Mapped[str] = mapped_column(String(8))
    native_delta: Mapped[Decimal] = mapped_column(
        Numeric(78, 0), nullable=False, doc="Wei, signed"
    )
    total_value: Mapped[Decimal] = mapped_column(
        Numeric, nullable=False, doc="Value in the reference currency"
    )
    builder_reward: Mapped[Decimal] = mapped_column(
        Numeric(78, 0), nullable=False, doc="Wei paid to the producer"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, doc="The full record as JSON"
    )


def create_engine(database_url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine and session factory.

    Args:
        database_url: SQLAlchemy URL, e.g. ``postgresql+psycopg://...`` or
            ``sqlite+aiosqlite:///pnl.db``

    Returns:
        Tuple of (engine, session factory)
    """
    engine = create_async_engine(database_url, echo=False)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


async def upsert_rows[DBModelType](
    session_factory: async_sessionmaker[AsyncSession],
    db_model_class: type[DBModelType],
    rows: Sequence[dict[str, Any]],
) -> None:
    """Upsert rows using INSERT ... ON CONFLICT DO UPDATE.

    Works on PostgreSQL and SQLite, picked from the session's dialect.

    Args:
        session_factory: Session factory bound to the target database
        db_model_class: The SQLAlchemy model class (e.g., PnLRecordDB)
        rows: Column values per row

    Examples:
        await upsert_rows(session_factory, PnLRecordDB, [row1, row2])

    Raises:
        ValueError: If the database model class cannot be inspected
    """
    if not rows:
        return

    async with session_factory() as session:
        try:
            mapper = inspect(db_model_class)
            if not mapper:
                msg = f"Cannot inspect {db_model_class}"
                raise ValueError(msg)  # noqa: TRY301
            pk_columns = [col.name for col in mapper.primary_key]

            dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
            insert = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = insert(db_model_class).values(list(rows))

            # Build the update dict (all columns except primary keys)
            update_dict = {
                col: stmt.excluded[col] for col in rows[0] if col not in pk_columns
            }

            stmt = stmt.on_conflict_do_update(
                index_elements=pk_columns,
                set_=update_dict,
            )

            await session.execute(stmt)
            await session.commit()
        except Exception:
            await session.rollback()
            raise


__all__ = [
    "Base",
    "PnLRecordDB",
    "create_engine",
    "upsert_rows",
]
