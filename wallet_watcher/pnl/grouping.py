"""Attribution of a block's transactions to watched wallets.

Transactions are linked by shared exposure: the counterparties a wallet's
transaction touched, besides the wallet itself, the fee sink, the zero address
and the block producer. Two transactions of the same wallet that share a
counterparty end up in one group. An unwatched transaction that touches a
counterparty of a wallet's transaction and lies between that wallet's first and
last transaction of the block joins the group too (the victim of a sandwich).
"""

from collections.abc import Mapping, Sequence

from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.pnl.models import (
    FEE_SINK,
    ZERO_ADDRESS,
    AttributionGroup,
    Block,
    TransactionLedger,
    WatchedWallet,
)


logger = get_logger(__name__)

AIRDROP_MIN_ACCOUNTS = 3


class _DisjointSet:
    def __init__(self, items: Sequence[int]) -> None:
        self.parent = {item: item for item in items}

    def find(self, item: int) -> int:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            # Smallest index stays the representative
            self.parent[max(root_a, root_b)] = min(root_a, root_b)


def is_spam_airdrop(ledger: TransactionLedger) -> bool:
    """One token sent by one account to many: an unsolicited airdrop.

    Gas deltas are ignored.
    """
    net = ledger.net(include_fees=False)
    if len(net) < AIRDROP_MIN_ACCOUNTS:
        return False

    assets = {asset for changes in net.values() for asset in changes}
    if len(assets) != 1:
        return False

    senders = [
        address for address, changes in net.items() if any(v < 0 for v in changes.values())
    ]
    return len(senders) == 1


def resolve_wallet_addresses(
    wallets: Sequence[WatchedWallet], ledgers: Sequence[TransactionLedger]
) -> dict[str, frozenset[str]]:
    """Address set of every wallet for one block.

    With ``include_recipient`` the target of each successful transaction sent
    by the wallet's main address counts as the wallet's own for this block.
    """
    resolved: dict[str, frozenset[str]] = {}
    for wallet in wallets:
        addresses = set(wallet.addresses)
        if wallet.include_recipient:
            main = wallet.address.lower()
            addresses.update(
                ledger.to
                for ledger in ledgers
                if ledger.success and ledger.sender == main and ledger.to
            )
        resolved[wallet.name] = frozenset(addresses)
    return resolved


class AttributionGrouper:
    """Partitions a block's transactions into attribution groups."""

    def __init__(self, wallets: Sequence[WatchedWallet]) -> None:
        self.wallets = list(wallets)

    def group(
        self,
        block: Block,
        ledgers: Sequence[TransactionLedger],
        addresses: Mapping[str, frozenset[str]] | None = None,
    ) -> list[AttributionGroup]:
        """Group the block's transactions.

        Args:
            block: Normalized block (for the beneficiary and height)
            ledgers: Per-transaction ledgers in index order
            addresses: Resolved wallet address sets; computed when omitted

        Returns:
            Groups ordered by their first member
        """
        if addresses is None:
            addresses = resolve_wallet_addresses(self.wallets, ledgers)

        ignored = {FEE_SINK, ZERO_ADDRESS, block.beneficiary}
        touched = {ledger.tx_index: ledger.touched_addresses() for ledger in ledgers}
        by_index = {ledger.tx_index: ledger for ledger in ledgers}

        watched: dict[str, list[int]] = {}
        for wallet in self.wallets:
            own = addresses[wallet.name]
            watched[wallet.name] = [
                index
                for index, found in touched.items()
                if found & own
                and (by_index[index].sender in own or not is_spam_airdrop(by_index[index]))
            ]

        watched_any = {index for members in watched.values() for index in members}
        forest = _DisjointSet(list(touched))

        for wallet in self.wallets:
            members = watched[wallet.name]
            if not members:
                continue
            own = addresses[wallet.name]
            exposure = {index: touched[index] - own - ignored for index in members}

            if wallet.is_producer(block.beneficiary):
                for index in members[1:]:
                    forest.union(members[0], index)

            for i, first in enumerate(members):
                for second in members[i + 1 :]:
                    if exposure[first] & exposure[second]:
                        forest.union(first, second)

            low, high = members[0], members[-1]
            for index, found in touched.items():
                if index in watched_any or not low < index < high:
                    continue
                counterparties = found - ignored
                for member in members:
                    if exposure[member] & counterparties:
                        forest.union(index, member)

        components: dict[int, list[int]] = {}
        for index in sorted(touched):
            components.setdefault(forest.find(index), []).append(index)

        groups: list[AttributionGroup] = []
        for members in components.values():
            watched_members = [index for index in members if index in watched_any]
            if not watched_members:
                continue
            names = sorted(
                wallet.name
                for wallet in self.wallets
                if set(watched[wallet.name]) & set(members)
            )
            groups.append(
                AttributionGroup(
                    group_id=f"{block.number}-{members[0]}",
                    block_number=block.number,
                    members=members,
                    watched_members=watched_members,
                    wallets=names,
                    pattern="multi" if len(members) > 1 else "single",
                )
            )

        groups.sort(key=lambda group: group.members[0])
        logger.debug("Block %d: %d attribution groups", block.number, len(groups))
        return groups


__all__ = [
    "AttributionGrouper",
    "is_spam_airdrop",
    "resolve_wallet_addresses",
]
