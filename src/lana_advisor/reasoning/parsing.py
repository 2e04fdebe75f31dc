"""Tolerant parsing of stage output into structured proposals, critiques and verdicts."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "Ni mi uspelo analizirati vprašanja."
FALLBACK_NEXT_STEP = "Poskusi znova ali postavi bolj specifično vprašanje."
DEFAULT_CONFIDENCE = 50
MAX_QUESTIONS = 3

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


@dataclass(slots=True)
class Proposal:
    answer: str
    assumptions: list[str] = field(default_factory=list)
    steps_taken: list[str] = field(default_factory=list)
    unknowns: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)
    payment_intent: dict[str, Any] | None = None
    parsed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "payment_intent": self.payment_intent,
            "assumptions": self.assumptions,
            "steps_taken": self.steps_taken,
            "unknowns": self.unknowns,
            "risks": self.risks,
            "questions": self.questions,
        }


@dataclass(slots=True)
class Critique:
    claims_to_verify: list[str] = field(default_factory=list)
    failure_modes: list[str] = field(default_factory=list)
    missing_info: list[str] = field(default_factory=list)
    recommended_changes: list[str] = field(default_factory=list)
    parsed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "claims_to_verify": self.claims_to_verify,
            "failure_modes": self.failure_modes,
            "missing_info": self.missing_info,
            "recommended_changes": self.recommended_changes,
        }


@dataclass(slots=True)
class Verdict:
    final_answer: str
    confidence: int
    what_i_did: list[str] = field(default_factory=list)
    what_i_did_not_do: list[str] = field(default_factory=list)
    next_step: str = FALLBACK_NEXT_STEP
    payment_intent: dict[str, Any] | None = None
    parsed: bool = True


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Parse a single JSON object from raw stage output.

    Tries the whole text, then a fenced code block, then the outermost
    brace span.
    """

    stripped = text.strip()
    if not stripped:
        return None

    direct = _try_load_dict(stripped)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(stripped)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(stripped[start : end + 1])


def parse_proposal(text: str) -> Proposal:
    payload = extract_json_object(text)
    if payload is None:
        logger.warning("Proposer output is not JSON, using fallback proposal")
        return fallback_proposal()
    return Proposal(
        answer=_string(payload.get("answer")) or FALLBACK_ANSWER,
        assumptions=_string_list(payload.get("assumptions")),
        steps_taken=_string_list(payload.get("steps_taken")),
        unknowns=_string_list(payload.get("unknowns")),
        risks=_string_list(payload.get("risks")),
        questions=_string_list(payload.get("questions"))[:MAX_QUESTIONS],
        payment_intent=_payment_intent(payload.get("payment_intent")),
    )


def parse_critique(text: str) -> Critique:
    payload = extract_json_object(text)
    if payload is None:
        logger.warning("Critic output is not JSON, using empty critique")
        return Critique(parsed=False)
    return Critique(
        claims_to_verify=_string_list(payload.get("claims_to_verify")),
        failure_modes=_string_list(payload.get("failure_modes")),
        missing_info=_string_list(payload.get("missing_info")),
        recommended_changes=_string_list(payload.get("recommended_changes")),
    )


def parse_verdict(text: str, proposal: Proposal) -> Verdict:
    payload = extract_json_object(text)
    if payload is None:
        logger.warning("Arbitrator output is not JSON, deriving verdict from proposal")
        return fallback_verdict(proposal)
    return Verdict(
        final_answer=_string(payload.get("final_answer")) or proposal.answer,
        confidence=clamp_confidence(payload.get("confidence")),
        what_i_did=_string_list(payload.get("what_i_did")),
        what_i_did_not_do=_string_list(payload.get("what_i_did_not_do")),
        next_step=_string(payload.get("next_step")) or FALLBACK_NEXT_STEP,
        payment_intent=_payment_intent(payload.get("payment_intent")),
    )


def fallback_proposal() -> Proposal:
    return Proposal(
        answer=FALLBACK_ANSWER,
        steps_taken=["Attempted analysis"],
        unknowns=["Analysis failed"],
        parsed=False,
    )


def fallback_verdict(proposal: Proposal) -> Verdict:
    return Verdict(
        final_answer=proposal.answer,
        confidence=DEFAULT_CONFIDENCE,
        what_i_did=list(proposal.steps_taken),
        what_i_did_not_do=list(proposal.unknowns),
        next_step=FALLBACK_NEXT_STEP,
        payment_intent=proposal.payment_intent,
        parsed=False,
    )


def clamp_confidence(value: object) -> int:
    """Confidence as an int in [0, 100]; anything non-numeric becomes 50."""

    if isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    if isinstance(value, str):
        try:
            value = float(value.strip().rstrip("%"))
        except ValueError:
            return DEFAULT_CONFIDENCE
    if not isinstance(value, int | float) or not math.isfinite(value):
        return DEFAULT_CONFIDENCE
    return max(0, min(100, round(value)))


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _string(value: object) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


def _payment_intent(value: object) -> dict[str, Any] | None:
    if isinstance(value, dict) and value:
        return value
    return None
