"""Data categories a deferred task can wait for."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any


class MissingField(str, Enum):
    """Fixed enumeration of enrichable data categories."""

    WALLET_HOLDINGS = "wallet-holdings"
    PENDING_TRANSFERS = "pending-transfers"
    EVENTS = "events"


# Categories the advisor context is expected to carry on every request.
TRACKABLE_FIELDS: tuple[MissingField, ...] = (
    MissingField.WALLET_HOLDINGS,
    MissingField.PENDING_TRANSFERS,
)

KNOWN_FIELD_NAMES = frozenset(item.value for item in MissingField)


def detect_missing_fields(context: Mapping[str, Any] | None) -> list[str]:
    """Return trackable categories that are absent or null in the advisor context."""

    if context is None:
        return [item.value for item in TRACKABLE_FIELDS]
    return [item.value for item in TRACKABLE_FIELDS if context.get(item.value) is None]


def normalize_missing_fields(values: Iterable[str]) -> tuple[str, ...]:
    """Validate and dedupe field names while keeping the caller's order."""

    ordered: list[str] = []
    seen: set[str] = set()
    for value in values:
        name = value.strip()
        if not name or name in seen:
            continue
        if name not in KNOWN_FIELD_NAMES:
            raise ValueError(
                f"Unknown data category {name!r}; expected one of {sorted(KNOWN_FIELD_NAMES)}.",
            )
        seen.add(name)
        ordered.append(name)
    return tuple(ordered)
