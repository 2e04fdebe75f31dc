"""Curated knowledge entries and their keyword ranking for the proposer."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from sqlmodel import Session, col, select

from lana_advisor.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    utc_now,
)
from lana_advisor.storage.sqlmodel_models import AiKnowledgeEntry

TOP_ENTRIES = 5
FALLBACK_ENTRIES = 3
CANDIDATE_LIMIT = 50
ENTRY_SEPARATOR = "\n\n---\n\n"

_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)


@dataclass(slots=True)
class KnowledgeEntry:
    title: str
    summary: str
    lang: str = "en"
    body: str | None = None
    topic: str | None = None
    keywords: list[str] = field(default_factory=list)
    slug: str | None = None
    status: str = "active"


@dataclass(slots=True)
class ScoredEntry:
    entry: KnowledgeEntry
    score: int
    language_match: bool


class KnowledgeBase:
    """Stored knowledge entries, newest first."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def add_entry(self, entry: KnowledgeEntry) -> str:
        now = to_db_datetime(utc_now())
        entry_id = uuid4().hex
        with Session(self.engine) as session:
            session.add(
                AiKnowledgeEntry(
                    id=entry_id,
                    slug=entry.slug or entry_id,
                    status=entry.status,
                    lang=entry.lang,
                    title=entry.title,
                    summary=entry.summary,
                    body=entry.body,
                    topic=entry.topic,
                    keywords_json=dump_json(entry.keywords) if entry.keywords else None,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        return entry_id

    def candidates(self, lang_code: str, *, limit: int = CANDIDATE_LIMIT) -> list[KnowledgeEntry]:
        """Active entries in the requested language or English."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AiKnowledgeEntry)
                .where(
                    AiKnowledgeEntry.status == "active",
                    col(AiKnowledgeEntry.lang).in_([lang_code, "en"]),
                )
                .order_by(col(AiKnowledgeEntry.created_at).desc())
                .limit(limit),
            ).all()
            return [
                KnowledgeEntry(
                    title=row.title,
                    summary=row.summary,
                    lang=row.lang,
                    body=row.body,
                    topic=row.topic,
                    keywords=[str(item) for item in load_json(row.keywords_json, [])],
                    slug=row.slug,
                    status=row.status,
                )
                for row in rows
            ]

    def knowledge_text(self, question: str, lang_code: str) -> str:
        return format_entries(select_entries(question, self.candidates(lang_code), lang_code))


def query_terms(question: str) -> list[str]:
    cleaned = _NON_WORD.sub(" ", question.lower())
    return [term for term in cleaned.split() if len(term) > 2]


def score_entry(entry: KnowledgeEntry, terms: Sequence[str], lang_code: str) -> ScoredEntry:
    """+1 per matching term, +2 more in the title, +1 more in the topic, +1 for language."""

    title = entry.title.lower()
    topic = (entry.topic or "").lower()
    searchable = " ".join([entry.title, entry.summary, entry.topic or "", *entry.keywords]).lower()
    score = 0
    for term in terms:
        if term not in searchable:
            continue
        score += 1
        if term in title:
            score += 2
        if term in topic:
            score += 1
    language_match = entry.lang == lang_code
    if language_match:
        score += 1
    return ScoredEntry(entry=entry, score=score, language_match=language_match)


def select_entries(
    question: str,
    entries: Sequence[KnowledgeEntry],
    lang_code: str,
    *,
    limit: int = TOP_ENTRIES,
) -> list[KnowledgeEntry]:
    """Top entries by keyword overlap, ties broken by language match.

    When nothing matches, the first few entries in the requested language
    are used instead.
    """

    terms = query_terms(question)
    scored = [score_entry(entry, terms, lang_code) for entry in entries]
    relevant = [item for item in scored if item.score > 0]
    if relevant:
        relevant.sort(key=lambda item: (item.score, item.language_match), reverse=True)
        return [item.entry for item in relevant[:limit]]
    return [entry for entry in entries if entry.lang == lang_code][:FALLBACK_ENTRIES]


def format_entries(entries: Sequence[KnowledgeEntry]) -> str:
    blocks: list[str] = []
    for entry in entries:
        block = f"### {entry.title}\n{entry.summary}"
        if entry.body:
            block += f"\n\n{entry.body}"
        blocks.append(block)
    return ENTRY_SEPARATOR.join(blocks)
