"""Contracts of the external data sources used during enrichment."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

# Relay record categories, keyed by the record kind the relays store them under.
WALLET_REGISTRATIONS = "wallet-registrations"
TRANSFER_PROPOSALS = "transfer-proposals"
TRANSFER_ACCEPTANCES = "transfer-acceptances"
COMMUNITY_EVENTS = "community-events"

CATEGORY_KINDS: dict[str, int] = {
    WALLET_REGISTRATIONS: 30889,
    TRANSFER_PROPOSALS: 90900,
    TRANSFER_ACCEPTANCES: 90901,
    COMMUNITY_EVENTS: 36677,
}


@dataclass(slots=True)
class RelayRecord:
    """One raw signed record returned by a relay."""

    record_id: str
    author: str
    kind: int
    created_at: int
    tags: list[list[str]] = field(default_factory=list)
    content: str = ""

    def tag_value(self, *names: str) -> str | None:
        """Return the first value of the first tag matching any of `names`."""

        for tag in self.tags:
            if tag and tag[0] in names and len(tag) > 1:
                return tag[1]
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "pubkey": self.author,
            "kind": self.kind,
            "created_at": self.created_at,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
        }


@dataclass(slots=True)
class PublishResult:
    relay: str
    success: bool
    error: str | None = None


@dataclass(slots=True)
class BalanceEntry:
    """Balance of one wallet address, or the reason it is unknown."""

    address: str
    amount: float
    status: str
    error: str | None = None


class RelayQuery(Protocol):
    """Relay network access.

    Implementations may return partial or empty results on timeout and must
    not raise for a single unreachable relay.
    """

    def query_by_category(
        self,
        category: str,
        requester_id: str,
        filters: dict[str, Any],
        timeout: float,
    ) -> list[RelayRecord]: ...

    def publish(self, record: RelayRecord, timeout: float) -> list[PublishResult]: ...


class BalanceQuery(Protocol):
    """Batch wallet balance lookup.

    A missing response for an address yields an error entry, not an exception.
    """

    def batch_balances(self, addresses: list[str], timeout: float) -> list[BalanceEntry]: ...
