"""Proposer -> critic -> arbitrator pipeline over one completion client."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from lana_advisor.errors import CompletionError, PipelineError
from lana_advisor.reasoning.completion import CompletionClient, TokenUsage
from lana_advisor.reasoning.knowledge import KnowledgeBase
from lana_advisor.reasoning.parsing import (
    Critique,
    Proposal,
    parse_critique,
    parse_proposal,
    parse_verdict,
)
from lana_advisor.reasoning.pricing import cost_in_lana, estimate_cost_usd
from lana_advisor.reasoning.prompts import (
    CRITIC_PROMPT,
    arbitrator_input,
    arbitrator_system_prompt,
    build_context_message,
    critic_input,
    language_code,
    proposer_system_prompt,
)
from lana_advisor.tasks.models import UsageLogWrite

logger = logging.getLogger(__name__)

DEFAULT_FAST_MODEL = "gemini-2.0-flash-lite"
DEFAULT_SMART_MODEL = "gemini-2.0-flash"
USAGE_MODEL_ID = "triad-gemini-async"
ANSWER_PREVIEW_CHARS = 200


@dataclass(slots=True)
class TriadResult:
    final_answer: str
    confidence: int
    what_i_did: list[str]
    what_i_did_not_do: list[str]
    next_step: str
    proposal: Proposal
    critique: Critique
    payment_intent: dict[str, Any] | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    cost_lana: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        """Serializable final answer stored on the task and sent to the requester."""

        payload: dict[str, Any] = {
            "type": "triad",
            "final_answer": self.final_answer,
            "confidence": self.confidence,
            "what_i_did": self.what_i_did,
            "what_i_did_not_do": self.what_i_did_not_do,
            "next_step": self.next_step,
            "_debug": {
                "proposer": {
                    "answer_preview": self.proposal.answer[:ANSWER_PREVIEW_CHARS],
                    "assumptions": self.proposal.assumptions,
                    "risks": self.proposal.risks,
                    "questions": self.proposal.questions,
                },
                "critic": {
                    "claims_to_verify": self.critique.claims_to_verify,
                    "failure_modes": self.critique.failure_modes,
                    "missing_info": self.critique.missing_info,
                },
            },
        }
        if self.payment_intent is not None:
            payload["payment_intent"] = self.payment_intent
        return payload


@dataclass(slots=True)
class _RunAccounting:
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0


class TriadPipeline:
    """Three sequential completion calls sharing one usage accumulator.

    Unparseable stage output is replaced by a fallback and the run goes on.
    A failing completion call aborts the run with `PipelineError`. Usage of
    the calls that did complete is logged either way.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: CompletionClient,
        usage_sink: Callable[[UsageLogWrite], object],
        knowledge: KnowledgeBase | None = None,
        fast_model: str = DEFAULT_FAST_MODEL,
        smart_model: str = DEFAULT_SMART_MODEL,
        pricing: str | None = None,
    ) -> None:
        self._client = client
        self._usage_sink = usage_sink
        self._knowledge = knowledge
        self._fast_model = fast_model
        self._smart_model = smart_model
        self._pricing = pricing

    def run(  # noqa: PLR0913
        self,
        *,
        question: str,
        context: dict[str, Any] | None,
        language: str,
        requester_id: str,
        exchange_rate: float,
        task_id: str | None = None,
    ) -> TriadResult:
        accounting = _RunAccounting()
        succeeded = False
        lang = language_code(language)
        knowledge_text = (
            self._knowledge.knowledge_text(question, lang) if self._knowledge is not None else ""
        )
        context_message = build_context_message(context, knowledge_text)
        try:
            proposer_raw = self._call(
                proposer_system_prompt(language, context_message),
                question,
                model=self._fast_model,
                accounting=accounting,
            )
            proposal = parse_proposal(proposer_raw)

            critic_raw = self._call(
                CRITIC_PROMPT,
                critic_input(question, proposal.to_dict(), context_message),
                model=self._fast_model,
                accounting=accounting,
            )
            critique = parse_critique(critic_raw)

            arbitrator_raw = self._call(
                arbitrator_system_prompt(language),
                arbitrator_input(
                    question,
                    proposal.to_dict(),
                    critique.to_dict(),
                    context_message,
                ),
                model=self._smart_model,
                accounting=accounting,
            )
            verdict = parse_verdict(arbitrator_raw, proposal)
            succeeded = True
        except CompletionError as exc:
            raise PipelineError(f"Reasoning pipeline aborted: {exc}") from exc
        finally:
            self._log_usage(
                accounting=accounting,
                requester_id=requester_id,
                exchange_rate=exchange_rate,
                succeeded=succeeded,
                task_id=task_id,
            )

        if verdict.payment_intent != proposal.payment_intent:
            logger.warning("Arbitrator changed the payment intent, restoring the proposer's")

        result = TriadResult(
            final_answer=verdict.final_answer,
            confidence=verdict.confidence,
            what_i_did=verdict.what_i_did,
            what_i_did_not_do=verdict.what_i_did_not_do,
            next_step=verdict.next_step,
            proposal=proposal,
            critique=critique,
            payment_intent=proposal.payment_intent,
            usage=accounting.usage,
            cost_usd=accounting.cost_usd,
            cost_lana=cost_in_lana(accounting.cost_usd, exchange_rate),
        )
        logger.info(
            "Reasoning finished for %s: confidence %d, %d tokens",
            requester_id[:16],
            result.confidence,
            result.usage.total_tokens,
        )
        return result

    def _call(
        self,
        system_prompt: str,
        user_message: str,
        *,
        model: str,
        accounting: _RunAccounting,
    ) -> str:
        result = self._client.complete(system_prompt, user_message, model=model)
        accounting.usage.add(result.usage)
        accounting.cost_usd += estimate_cost_usd(
            model=model,
            prompt_tokens=result.usage.prompt_tokens,
            completion_tokens=result.usage.completion_tokens,
            pricing=self._pricing,
        )
        return result.text

    def _log_usage(
        self,
        *,
        accounting: _RunAccounting,
        requester_id: str,
        exchange_rate: float,
        succeeded: bool,
        task_id: str | None,
    ) -> None:
        try:
            self._usage_sink(
                UsageLogWrite(
                    requester_id=requester_id,
                    model=USAGE_MODEL_ID,
                    prompt_tokens=accounting.usage.prompt_tokens,
                    completion_tokens=accounting.usage.completion_tokens,
                    total_tokens=accounting.usage.total_tokens,
                    cost_usd=accounting.cost_usd,
                    cost_lana=cost_in_lana(accounting.cost_usd, exchange_rate),
                    succeeded=succeeded,
                    task_id=task_id,
                ),
            )
        except Exception:
            logger.exception("Failed to log reasoning usage for %s", requester_id[:16])
