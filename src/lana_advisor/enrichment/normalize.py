"""Normalization of raw relay records and balance entries into advisor context."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from lana_advisor.enrichment.collaborators import BalanceEntry, RelayRecord

NO_RESPONSE = "No response"
UNNAMED_EVENT = "Unnamed event"

_WALLET_TAG_MIN_LENGTH = 6


def parse_wallets(
    records: Iterable[RelayRecord],
    *,
    trusted_signers: Sequence[str] = (),
) -> list[dict[str, Any]]:
    """Extract registered wallets from wallet-registration records.

    Records signed by an untrusted registrar are ignored when a trusted
    signer list is configured. A wallet registered more than once keeps
    its newest registration.
    """

    trusted = set(trusted_signers)
    wallets: list[dict[str, Any]] = []
    for record in records:
        if trusted and record.author not in trusted:
            continue
        status = record.tag_value("status") or "active"
        for tag in record.tags:
            if not tag or tag[0] != "w" or len(tag) < _WALLET_TAG_MIN_LENGTH:
                continue
            wallets.append(
                {
                    "wallet_id": tag[1],
                    "wallet_type": tag[2],
                    "note": tag[4] or "",
                    "amount_unregistered": tag[5],
                    "status": status,
                    "registrar": record.author,
                    "record_id": record.record_id,
                    "created_at": record.created_at,
                },
            )

    wallets.sort(key=lambda item: item["created_at"], reverse=True)
    newest: dict[str, dict[str, Any]] = {}
    for wallet in wallets:
        newest.setdefault(wallet["wallet_id"], wallet)
    return list(newest.values())


def merge_balances(
    wallets: Sequence[Mapping[str, Any]],
    entries: Iterable[BalanceEntry],
) -> list[dict[str, Any]]:
    """Attach `balance` and `balance_error` to each wallet by address."""

    by_address = {entry.address: entry for entry in entries}
    merged: list[dict[str, Any]] = []
    for wallet in wallets:
        entry = by_address.get(wallet["wallet_id"])
        if entry is None:
            merged.append({**wallet, "balance": None, "balance_error": NO_RESPONSE})
            continue
        merged.append(
            {
                **wallet,
                "balance": entry.amount if entry.error is None else None,
                "balance_error": entry.error,
            },
        )
    return merged


def mark_balances_unavailable(
    wallets: Sequence[Mapping[str, Any]],
    error: str,
) -> list[dict[str, Any]]:
    return [{**wallet, "balance": None, "balance_error": error} for wallet in wallets]


def active_events(records: Iterable[RelayRecord], *, now: int) -> list[dict[str, Any]]:
    """Keep events without an end time or ending in the future."""

    events: list[dict[str, Any]] = []
    for record in records:
        end = _parse_int(record.tag_value("end"))
        if end != 0 and end <= now:
            continue
        events.append(
            {
                "id": record.tag_value("d") or record.record_id,
                "title": record.tag_value("title", "name") or UNNAMED_EVENT,
                "start": record.tag_value("start"),
                "location": record.tag_value("location"),
            },
        )
    return events


def pending_transfers(
    proposals: Sequence[RelayRecord],
    acceptances: Sequence[RelayRecord],
) -> dict[str, list[dict[str, Any]]]:
    """Group transfer proposals and acceptances; empty when both are empty."""

    if not proposals and not acceptances:
        return {}
    return {
        "proposals": [record.to_dict() for record in proposals],
        "acceptances": [record.to_dict() for record in acceptances],
    }


def _parse_int(raw: str | None) -> int:
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError:
        return 0
