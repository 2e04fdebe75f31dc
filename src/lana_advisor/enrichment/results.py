"""Tagged per-field enrichment results and the sufficiency check."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FieldOutcome(str, Enum):
    """What happened when enriching one data category."""

    FETCHED = "fetched"
    EMPTY = "empty"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


@dataclass(slots=True)
class FieldResult:
    field_name: str
    outcome: FieldOutcome
    data: Any = None
    error: str | None = None

    @classmethod
    def from_data(cls, field_name: str, data: Any) -> FieldResult:
        """Classify fetched data as FETCHED or EMPTY."""

        if is_sufficient(data):
            return cls(field_name=field_name, outcome=FieldOutcome.FETCHED, data=data)
        return cls(field_name=field_name, outcome=FieldOutcome.EMPTY)


@dataclass(slots=True)
class EnrichmentReport:
    """Per-field results of one enrichment pass."""

    results: dict[str, FieldResult] = field(default_factory=dict)

    @property
    def new_data(self) -> dict[str, Any]:
        """Field name -> newly fetched data; absent keys are still unavailable."""

        return {
            name: result.data
            for name, result in self.results.items()
            if result.outcome is FieldOutcome.FETCHED
        }

    @property
    def has_progress(self) -> bool:
        return has_progress(self.new_data, self.results)

    def outcome_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for result in self.results.values():
            counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
        return counts


def is_sufficient(value: Any) -> bool:
    """Data counts only as a non-empty list or a non-empty mapping."""

    if isinstance(value, Mapping):
        return len(value) > 0
    if isinstance(value, list | tuple):
        return len(value) > 0
    return False


def has_progress(new_data: Mapping[str, Any], missing_fields: Iterable[str]) -> bool:
    """True when at least one missing field received sufficient new data."""

    return any(is_sufficient(new_data.get(name)) for name in missing_fields)
