"""Slowly-changing system parameters: relays, balance servers, trusted signers, rates."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from lana_advisor.enrichment.collaborators import RelayQuery, RelayRecord
from lana_advisor.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from lana_advisor.storage.sqlmodel_models import SystemParametersSnapshot

logger = logging.getLogger(__name__)

SYSTEM_PARAMETERS = "system-parameters"
SYSTEM_PARAMETERS_KIND = 38888
DEFAULT_BALANCE_PORT = 5097
REGISTRAR_ROLE = "LanaRegistrar"


@dataclass(slots=True, frozen=True)
class BalanceServer:
    host: str
    port: int = DEFAULT_BALANCE_PORT


DEFAULT_BALANCE_SERVERS: tuple[BalanceServer, ...] = (
    BalanceServer("electrum1.lanacoin.com"),
    BalanceServer("electrum2.lanacoin.com"),
    BalanceServer("electrum3.lanacoin.com"),
)


@dataclass(slots=True)
class SystemParameters:
    """One published revision of system parameters."""

    relays: tuple[str, ...] = ()
    balance_servers: tuple[BalanceServer, ...] = DEFAULT_BALANCE_SERVERS
    trusted_signers: tuple[str, ...] = ()
    exchange_rates: dict[str, float] = field(default_factory=dict)
    version: str = "1"
    event_id: str | None = None
    fetched_at: datetime | None = None


class SystemParametersSource(Protocol):
    def fetch(self) -> SystemParameters | None:
        """Return the newest published parameters, or None when unavailable."""
        ...


class SystemParametersRepository:
    """Keeps only the latest parameters snapshot."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def save(self, parameters: SystemParameters) -> None:
        fetched_at = parameters.fetched_at or utc_now()
        with Session(self.engine) as session:
            session.exec(sa_delete(SystemParametersSnapshot))
            session.add(
                SystemParametersSnapshot(
                    event_id=parameters.event_id,
                    version=parameters.version,
                    relays_json=dump_json(list(parameters.relays)),
                    balance_servers_json=dump_json(
                        [
                            {"host": server.host, "port": server.port}
                            for server in parameters.balance_servers
                        ],
                    ),
                    trusted_signers_json=dump_json(list(parameters.trusted_signers)),
                    exchange_rates_json=dump_json(parameters.exchange_rates),
                    fetched_at=to_db_datetime(fetched_at),
                ),
            )
            session.commit()

    def latest(self) -> SystemParameters:
        """Return the stored snapshot, or defaults (no relays) when none exists."""

        with Session(self.engine) as session:
            row = session.exec(
                select(SystemParametersSnapshot)
                .order_by(col(SystemParametersSnapshot.fetched_at).desc())
                .limit(1),
            ).first()
            if row is None:
                return SystemParameters()
            servers = tuple(
                _parse_server(item) for item in load_json(row.balance_servers_json, [])
            )
            return SystemParameters(
                relays=tuple(load_json(row.relays_json, [])),
                balance_servers=tuple(server for server in servers if server is not None)
                or DEFAULT_BALANCE_SERVERS,
                trusted_signers=tuple(load_json(row.trusted_signers_json, [])),
                exchange_rates=dict(load_json(row.exchange_rates_json, {})),
                version=row.version,
                event_id=row.event_id,
                fetched_at=to_utc_aware_datetime(row.fetched_at),
            )


class RelaySystemParametersSource:
    """Reads the parameters record published by the network authority."""

    def __init__(
        self,
        *,
        relay_query: RelayQuery,
        authority: str,
        fallback_relays: tuple[str, ...],
        timeout_seconds: float = 15.0,
    ) -> None:
        self._relay_query = relay_query
        self._authority = authority
        self._fallback_relays = fallback_relays
        self._timeout_seconds = timeout_seconds

    def fetch(self) -> SystemParameters | None:
        records = self._relay_query.query_by_category(
            SYSTEM_PARAMETERS,
            self._authority,
            {
                "relays": list(self._fallback_relays),
                "authors": [self._authority],
                "#d": ["main"],
                "limit": 1,
            },
            self._timeout_seconds,
        )
        candidates = [
            record
            for record in records
            if record.author == self._authority and record.kind == SYSTEM_PARAMETERS_KIND
        ]
        if not candidates:
            return None
        newest = max(candidates, key=lambda record: record.created_at)
        return parse_parameters_record(newest, fallback_relays=self._fallback_relays)


class SystemParametersService:
    """Refreshes the stored snapshot from its source."""

    def __init__(
        self,
        *,
        repository: SystemParametersRepository,
        source: SystemParametersSource,
    ) -> None:
        self._repository = repository
        self._source = source

    def refresh(self) -> bool:
        """Fetch and store new parameters; the previous snapshot stays on failure."""

        try:
            parameters = self._source.fetch()
        except Exception:  # noqa: BLE001
            logger.warning("System parameters fetch failed", exc_info=True)
            return False
        if parameters is None:
            logger.warning("System parameters unavailable, keeping previous snapshot")
            return False
        self._repository.save(parameters)
        logger.info(
            "System parameters refreshed: version %s, %d relay(s)",
            parameters.version,
            len(parameters.relays),
        )
        return True

    def current(self) -> SystemParameters:
        return self._repository.latest()


def parse_parameters_record(
    record: RelayRecord,
    *,
    fallback_relays: tuple[str, ...] = (),
) -> SystemParameters:
    """Build parameters from tags first, then from JSON content."""

    content = _load_content(record.content)
    relays = tuple(tag[1] for tag in record.tags if len(tag) > 1 and tag[0] == "relay")
    if not relays:
        relays = tuple(content.get("relays") or fallback_relays)

    servers = tuple(
        BalanceServer(host=tag[1], port=_port(tag[2] if len(tag) > 2 else None))
        for tag in record.tags
        if len(tag) > 1 and tag[0] == "electrum"
    )
    if not servers:
        parsed = (_parse_server(item) for item in content.get("electrum") or [])
        servers = tuple(server for server in parsed if server is not None)

    rates: dict[str, float] = {}
    for tag in record.tags:
        if len(tag) > 2 and tag[0] == "fx":
            try:
                rates[tag[1]] = float(tag[2])
            except ValueError:
                continue

    trusted = _registrar_signers(content.get("trusted_signers"))

    return SystemParameters(
        relays=relays,
        balance_servers=servers or DEFAULT_BALANCE_SERVERS,
        trusted_signers=trusted,
        exchange_rates=rates,
        version=record.tag_value("version") or str(content.get("version") or "1"),
        event_id=record.record_id,
        fetched_at=utc_now(),
    )


def _registrar_signers(raw: object) -> tuple[str, ...]:
    """Only wallet registrars are trusted to sign wallet registrations."""

    if not isinstance(raw, dict):
        return ()
    registrars = raw.get(REGISTRAR_ROLE)
    if not isinstance(registrars, list):
        return ()
    return tuple(str(item) for item in registrars if item)


def _load_content(raw: str) -> dict[str, Any]:
    if not raw.strip().startswith("{"):
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("System parameters content is not valid JSON, using tags only")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _parse_server(item: object) -> BalanceServer | None:
    if not isinstance(item, dict) or not item.get("host"):
        return None
    return BalanceServer(host=str(item["host"]), port=_port(item.get("port")))


def _port(raw: object) -> int:
    try:
        return int(raw) if raw not in (None, "") else DEFAULT_BALANCE_PORT  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_BALANCE_PORT
