"""Notifier interface and dispatching of records to notifiers."""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence

from pydantic import BaseModel

from wallet_watcher.helpers.http import log_and_suppress_errors
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.pnl.chains import ChainInfo
from wallet_watcher.pnl.models import PnLRecord


logger = get_logger(__name__)


class NotificationContext(BaseModel):
    """What a notifier needs besides the records."""

    chain: ChainInfo
    chain_name: str
    block_number: int


class Notifier(ABC):
    """Receives the records of one attribution group."""

    @abstractmethod
    async def send(self, records: Sequence[PnLRecord], context: NotificationContext) -> None:
        """Deliver the records. May raise; the dispatcher logs failures."""

    async def aclose(self) -> None:  # noqa: B027
        """Release resources held by the notifier."""


class NotificationDispatcher:
    """Routes records to the notifiers of their wallets.

    ``routes`` maps wallet names to their notifiers; notifiers in ``broadcast``
    get every record. One ``send`` call is made per attribution group and
    notifier, and a failing notifier never stops the others.
    """

    def __init__(
        self,
        routes: Mapping[str, Sequence[Notifier]] | None = None,
        broadcast: Sequence[Notifier] = (),
    ) -> None:
        self.routes = {wallet: list(notifiers) for wallet, notifiers in (routes or {}).items()}
        self.broadcast = list(broadcast)

    def notifiers(self) -> list[Notifier]:
        unique: dict[int, Notifier] = {}
        for notifier in [*self.broadcast, *(n for ns in self.routes.values() for n in ns)]:
            unique.setdefault(id(notifier), notifier)
        return list(unique.values())

    async def dispatch(self, records: Sequence[PnLRecord], context: NotificationContext) -> None:
        by_group: dict[str, list[PnLRecord]] = {}
        for record in records:
            by_group.setdefault(record.group_id, []).append(record)

        for group_id, group_records in by_group.items():
            for notifier in self.notifiers():
                selected = [
                    record
                    for record in group_records
                    if notifier in self.broadcast or notifier in self.routes.get(record.wallet, [])
                ]
                if not selected:
                    continue
                async with log_and_suppress_errors(
                    f"{type(notifier).__name__} for group {group_id}", log_level="error"
                ):
                    await notifier.send(selected, context)

    async def aclose(self) -> None:
        for notifier in self.notifiers():
            async with log_and_suppress_errors(f"closing {type(notifier).__name__}"):
                await notifier.aclose()


__all__ = [
    "NotificationContext",
    "NotificationDispatcher",
    "Notifier",
]
