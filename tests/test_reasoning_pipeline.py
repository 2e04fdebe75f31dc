from __future__ import annotations

import json

import allure
import pytest
from conftest import REQUESTER, ScriptedCompletionClient

from lana_advisor.errors import CompletionError, PipelineError
from lana_advisor.reasoning.knowledge import KnowledgeBase, KnowledgeEntry
from lana_advisor.reasoning.parsing import DEFAULT_CONFIDENCE, FALLBACK_ANSWER
from lana_advisor.reasoning.pipeline import USAGE_MODEL_ID, TriadPipeline
from lana_advisor.tasks.models import UsageLogWrite
from lana_advisor.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Reasoning Pipeline"),
]

INTENT = {"recipient": "Ana", "amount": 10, "currency": "LANA"}

PROPOSAL = json.dumps(
    {
        "answer": "You can send 10 LANA to Ana.",
        "assumptions": ["Ana is in your contacts"],
        "steps_taken": ["Checked wallet balances"],
        "unknowns": [],
        "risks": ["Low balance"],
        "questions": [],
        "payment_intent": INTENT,
    },
)
CRITIQUE = json.dumps(
    {
        "claims_to_verify": ["Balance is enough"],
        "failure_modes": [],
        "missing_info": [],
        "recommended_changes": ["Mention fees"],
    },
)
VERDICT = json.dumps(
    {
        "final_answer": "Yes, send 10 LANA to Ana; your main wallet holds 12.5 LANA.",
        "confidence": 82,
        "what_i_did": ["Checked balances"],
        "what_i_did_not_do": ["Verify Ana's wallet"],
        "next_step": "Confirm the payment.",
    },
)


def _pipeline(client: ScriptedCompletionClient, sink: list[UsageLogWrite], **kwargs) -> TriadPipeline:
    return TriadPipeline(
        client=client,
        usage_sink=sink.append,
        fast_model="fast-model",
        smart_model="smart-model",
        pricing="*:1.0:2.0",
        **kwargs,
    )


def _run(pipeline: TriadPipeline):
    return pipeline.run(
        question="Can I send 10 LANA to Ana?",
        context={"wallet-holdings": [{"wallet_id": "L1", "balance": 12.5}]},
        language="sl",
        requester_id=REQUESTER,
        exchange_rate=300.0,
        task_id="task-1",
    )


def test_pipeline_runs_three_stages_in_order() -> None:
    client = ScriptedCompletionClient([PROPOSAL, CRITIQUE, VERDICT], tokens=1000)
    usage: list[UsageLogWrite] = []

    result = _run(_pipeline(client, usage))

    assert [call["model"] for call in client.calls] == ["fast-model", "fast-model", "smart-model"]
    assert client.calls[0]["user_message"] == "Can I send 10 LANA to Ana?"
    assert "USER DATA:" in client.calls[0]["system_prompt"]
    assert "PROPOSER RESPONSE:" in client.calls[1]["user_message"]
    assert "CRITIC JSON:" in client.calls[2]["user_message"]
    assert result.final_answer.startswith("Yes, send 10 LANA")
    assert result.confidence == 82
    assert result.usage.total_tokens == 4500

    assert len(usage) == 1
    assert usage[0].model == USAGE_MODEL_ID
    assert usage[0].succeeded is True
    assert usage[0].task_id == "task-1"
    assert usage[0].cost_usd == pytest.approx(3 * (1000 / 1e6 * 1.0 + 500 / 1e6 * 2.0))
    assert usage[0].cost_lana == pytest.approx(usage[0].cost_usd * 300.0)


def test_payment_intent_is_always_the_proposers() -> None:
    tampered = json.loads(VERDICT)
    tampered["payment_intent"] = {"recipient": "Eve", "amount": 1000, "currency": "LANA"}
    client = ScriptedCompletionClient([PROPOSAL, CRITIQUE, json.dumps(tampered)])

    result = _run(_pipeline(client, []))

    assert result.payment_intent == INTENT
    assert result.to_payload()["payment_intent"] == INTENT


def test_payload_has_no_payment_intent_when_proposer_had_none() -> None:
    proposal = json.loads(PROPOSAL)
    proposal["payment_intent"] = None
    client = ScriptedCompletionClient([json.dumps(proposal), CRITIQUE, VERDICT])

    payload = _run(_pipeline(client, [])).to_payload()

    assert "payment_intent" not in payload
    assert payload["type"] == "triad"
    assert payload["_debug"]["critic"]["claims_to_verify"] == ["Balance is enough"]


def test_malformed_stage_output_still_yields_an_answer() -> None:
    client = ScriptedCompletionClient(["not json", "also not json", "still not json"])

    result = _run(_pipeline(client, []))

    assert result.final_answer == FALLBACK_ANSWER
    assert result.confidence == DEFAULT_CONFIDENCE
    assert result.what_i_did == ["Attempted analysis"]


def test_completion_failure_aborts_and_logs_partial_usage() -> None:
    client = ScriptedCompletionClient([PROPOSAL, CompletionError("Timeout calling fast-model.")])
    usage: list[UsageLogWrite] = []

    with pytest.raises(PipelineError, match="Timeout calling fast-model"):
        _run(_pipeline(client, usage))

    assert len(usage) == 1
    assert usage[0].succeeded is False
    assert usage[0].total_tokens == 150


def test_failing_usage_sink_does_not_break_the_run() -> None:
    def broken_sink(_: UsageLogWrite) -> None:
        raise RuntimeError("disk full")

    client = ScriptedCompletionClient([PROPOSAL, CRITIQUE, VERDICT])
    pipeline = TriadPipeline(client=client, usage_sink=broken_sink)

    result = _run(pipeline)

    assert result.confidence == 82


def test_knowledge_is_added_to_the_proposer_context(db_path) -> None:
    TaskRepository(db_path).init_schema()
    knowledge = KnowledgeBase(db_path)
    knowledge.add_entry(
        KnowledgeEntry(
            title="Pošiljanje LANA",
            summary="Plačila potrdiš v denarnici.",
            lang="sl",
            keywords=["send", "plačilo"],
        ),
    )
    client = ScriptedCompletionClient([PROPOSAL, CRITIQUE, VERDICT])

    _run(_pipeline(client, [], knowledge=knowledge))
    knowledge.close()

    system_prompt = client.calls[0]["system_prompt"]
    assert "=== LANA KNOWLEDGE BASE ===" in system_prompt
    assert "Pošiljanje LANA" in system_prompt
