"""History store: persisted PnL records used for deduplication."""

from collections.abc import Sequence
from decimal import Decimal

from sqlalchemy import select

from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.history.db import Base, PnLRecordDB, create_engine, upsert_rows
from wallet_watcher.pnl.models import PnLRecord


logger = get_logger(__name__)


class HistoryStore:
    """Upserts records and answers whether one was already stored.

    Example:
        ```python
        store = HistoryStore("sqlite+aiosqlite:///pnl.db")
        await store.create_tables()
        if not await store.is_recorded("mainnet", "searcher", 19_000_000, "19000000-3"):
            ...
        await store.record("mainnet", records)
        await store.aclose()
        ```
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.engine, self.session_factory = create_engine(database_url)

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def record(self, chain: str, records: Sequence[PnLRecord]) -> None:
        """Store records; storing the same record again overwrites it."""
        rows = [
            {
                "chain": chain,
                "wallet": record.wallet,
                "block_number": record.block_number,
                "group_id": record.group_id,
                "address": record.address,
                "pattern": record.pattern,
                "native_delta": Decimal(record.native_delta),
                "total_value": record.total_value,
                "builder_reward": Decimal(record.builder_reward),
                "payload": record.model_dump(mode="json"),
            }
            for record in records
        ]
        await upsert_rows(self.session_factory, PnLRecordDB, rows)
        logger.debug("Stored %d records for %s", len(rows), chain)

    async def is_recorded(
        self, chain: str, wallet: str, block_number: int, group_id: str
    ) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PnLRecordDB.block_number).where(
                    PnLRecordDB.chain == chain,
                    PnLRecordDB.wallet == wallet,
                    PnLRecordDB.block_number == block_number,
                    PnLRecordDB.group_id == group_id,
                )
            )
            return result.first() is not None

    async def load(self, chain: str, wallet: str, block_number: int) -> list[PnLRecord]:
        """Records of one wallet at one height, ordered by group."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PnLRecordDB.payload)
                .where(
                    PnLRecordDB.chain == chain,
                    PnLRecordDB.wallet == wallet,
                    PnLRecordDB.block_number == block_number,
                )
                .order_by(PnLRecordDB.group_id)
            )
            return [PnLRecord.model_validate(payload) for payload in result.scalars()]

    async def aclose(self) -> None:
        await self.engine.dispose()


__all__ = [
    "HistoryStore",
]
