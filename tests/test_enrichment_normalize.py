from __future__ import annotations

import allure
import pytest
from conftest import make_record, wallet_record

from lana_advisor.enrichment.collaborators import BalanceEntry
from lana_advisor.enrichment.normalize import (
    NO_RESPONSE,
    UNNAMED_EVENT,
    active_events,
    mark_balances_unavailable,
    merge_balances,
    parse_wallets,
    pending_transfers,
)
from lana_advisor.enrichment.results import (
    EnrichmentReport,
    FieldOutcome,
    FieldResult,
    has_progress,
    is_sufficient,
)
from lana_advisor.tasks.fields import detect_missing_fields, normalize_missing_fields

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Data Enrichment"),
]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ([{"wallet_id": "L1"}], True),
        ({"proposals": []}, True),
        ([], False),
        ({}, False),
        (None, False),
        ("wallets", False),
        (0, False),
    ],
)
def test_is_sufficient_accepts_only_non_empty_collections(value: object, expected: bool) -> None:
    assert is_sufficient(value) is expected


def test_has_progress_requires_new_data_for_a_missing_field() -> None:
    assert has_progress({"events": [{"id": "e1"}]}, ["events"]) is True
    assert has_progress({"events": [{"id": "e1"}]}, ["wallet-holdings"]) is False
    assert has_progress({"wallet-holdings": []}, ["wallet-holdings"]) is False


def test_report_new_data_contains_only_fetched_fields() -> None:
    report = EnrichmentReport(
        results={
            "wallet-holdings": FieldResult.from_data("wallet-holdings", [{"wallet_id": "L1"}]),
            "events": FieldResult.from_data("events", []),
            "pending-transfers": FieldResult(
                field_name="pending-transfers",
                outcome=FieldOutcome.TIMED_OUT,
                error="timeout",
            ),
        },
    )

    assert report.new_data == {"wallet-holdings": [{"wallet_id": "L1"}]}
    assert report.has_progress is True
    assert report.outcome_counts() == {"fetched": 1, "empty": 1, "timed_out": 1}


def test_detect_missing_fields_flags_absent_trackable_fields() -> None:
    assert detect_missing_fields(None) == ["wallet-holdings", "pending-transfers"]
    assert detect_missing_fields({"wallet-holdings": [], "pending-transfers": None}) == [
        "pending-transfers",
    ]


def test_normalize_missing_fields_dedupes_in_order() -> None:
    assert normalize_missing_fields([" events", "wallet-holdings", "events", ""]) == (
        "events",
        "wallet-holdings",
    )


def test_parse_wallets_keeps_newest_registration_per_wallet() -> None:
    older = wallet_record("r1", ["L1", "L2"], created_at=100)
    newer = wallet_record("r2", ["L1"], created_at=200)

    wallets = parse_wallets([older, newer])

    by_id = {wallet["wallet_id"]: wallet for wallet in wallets}
    assert set(by_id) == {"L1", "L2"}
    assert by_id["L1"]["record_id"] == "r2"
    assert by_id["L2"]["record_id"] == "r1"
    assert by_id["L1"]["wallet_type"] == "Main"
    assert by_id["L1"]["note"] == "note L1"


def test_parse_wallets_ignores_untrusted_registrars() -> None:
    trusted = wallet_record("r1", ["L1"], author="trusted")
    rogue = wallet_record("r2", ["L2"], author="rogue")

    assert [w["wallet_id"] for w in parse_wallets([trusted, rogue], trusted_signers=["trusted"])] == [
        "L1",
    ]
    assert len(parse_wallets([trusted, rogue])) == 2


def test_parse_wallets_skips_short_wallet_tags() -> None:
    record = make_record("r1", tags=[["w", "L1", "Main"], ["p", "someone"]])

    assert parse_wallets([record]) == []


def test_merge_balances_marks_missing_addresses() -> None:
    wallets = [{"wallet_id": "L1"}, {"wallet_id": "L2"}, {"wallet_id": "L3"}]
    entries = [
        BalanceEntry(address="L1", amount=12.5, status="active"),
        BalanceEntry(address="L2", amount=0.0, status="inactive", error="Server down"),
    ]

    merged = merge_balances(wallets, entries)

    assert merged[0]["balance"] == 12.5
    assert merged[0]["balance_error"] is None
    assert merged[1] == {"wallet_id": "L2", "balance": None, "balance_error": "Server down"}
    assert merged[2]["balance_error"] == NO_RESPONSE


def test_mark_balances_unavailable_keeps_wallets() -> None:
    assert mark_balances_unavailable([{"wallet_id": "L1"}], "refused") == [
        {"wallet_id": "L1", "balance": None, "balance_error": "refused"},
    ]


def test_active_events_drops_ended_events() -> None:
    now = 1_700_000_000
    records = [
        make_record("e1", kind=36677, tags=[["title", "Meetup"], ["end", str(now + 60)]]),
        make_record("e2", kind=36677, tags=[["title", "Past"], ["end", str(now - 60)]]),
        make_record("e3", kind=36677, tags=[["d", "open-ended"]]),
        make_record("e4", kind=36677, tags=[["name", "Odd"], ["end", "soon"]]),
    ]

    events = active_events(records, now=now)

    assert [event["id"] for event in events] == ["e1", "open-ended", "e4"]
    assert events[1]["title"] == UNNAMED_EVENT
    assert events[2]["title"] == "Odd"


def test_pending_transfers_is_empty_without_records() -> None:
    assert pending_transfers([], []) == {}

    grouped = pending_transfers([make_record("p1", kind=90900)], [])
    assert grouped["acceptances"] == []
    assert grouped["proposals"][0]["id"] == "p1"
    assert grouped["proposals"][0]["kind"] == 90900
