"""HTTP clients for the host service's relay and balance gateway routes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx

from lana_advisor.enrichment.collaborators import (
    CATEGORY_KINDS,
    BalanceEntry,
    PublishResult,
    RelayRecord,
)
from lana_advisor.enrichment.normalize import NO_RESPONSE
from lana_advisor.parameters import (
    SYSTEM_PARAMETERS,
    SYSTEM_PARAMETERS_KIND,
    BalanceServer,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0


class HttpRelayGateway:
    """`RelayQuery` over the host's relay gateway.

    Transport failures are logged and reported as empty results.
    """

    def __init__(
        self,
        *,
        base_url: str,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(30.0, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
        )

    def query_by_category(
        self,
        category: str,
        requester_id: str,
        filters: dict[str, Any],
        timeout: float,
    ) -> list[RelayRecord]:
        kind = SYSTEM_PARAMETERS_KIND if category == SYSTEM_PARAMETERS else CATEGORY_KINDS[category]
        relay_filter = {key: value for key, value in filters.items() if key != "relays"}
        relay_filter["kinds"] = [kind]
        body = {
            "filter": relay_filter,
            "relays": filters.get("relays", []),
            "timeout": int(timeout * 1000),
        }
        try:
            response = self._client.post(
                f"{self._base_url}/query-nostr-events",
                json=body,
                timeout=httpx.Timeout(timeout + 5.0, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException:
            logger.warning("Timeout querying %s for %s", category, requester_id[:16])
            return []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Relay gateway error querying %s: %s", category, exc)
            return []

        events = payload.get("events") if isinstance(payload, dict) else None
        if not isinstance(events, list):
            return []
        return [record for record in (_to_record(item) for item in events) if record is not None]

    def publish(self, record: RelayRecord, timeout: float) -> list[PublishResult]:
        """Hand a signed record to the host's relay retry queue.

        The host acknowledges the whole record once, so the result holds a
        single entry for the gateway itself.
        """

        destination = f"{self._base_url}/queue-relay-event"
        try:
            response = self._client.post(
                destination,
                json={"signedEvent": record.to_dict(), "userPubkey": record.author},
                timeout=httpx.Timeout(timeout + 5.0, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Relay gateway error publishing %s: %s", record.record_id, exc)
            return [PublishResult(relay=destination, success=False, error=str(exc))]

        if not isinstance(payload, dict):
            return [PublishResult(relay=destination, success=False, error="Unexpected response")]
        success = payload.get("success") is True
        error = None if success else str(payload.get("error") or "Not queued")
        return [PublishResult(relay=destination, success=success, error=error)]

    def close(self) -> None:
        self._client.close()


class HttpBalanceGateway:
    """`BalanceQuery` over the host's wallet balance route.

    Addresses the gateway did not answer for get an error entry.
    """

    def __init__(
        self,
        *,
        base_url: str,
        servers_provider: Callable[[], tuple[BalanceServer, ...]],
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._servers_provider = servers_provider
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(30.0, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
        )

    def batch_balances(self, addresses: list[str], timeout: float) -> list[BalanceEntry]:
        if not addresses:
            return []
        servers = [{"host": server.host, "port": server.port} for server in self._servers_provider()]
        try:
            response = self._client.post(
                f"{self._base_url}/get-wallet-balances",
                json={"addresses": addresses, "electrum_servers": servers},
                timeout=httpx.Timeout(timeout, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException:
            logger.warning("Timeout fetching balances for %d address(es)", len(addresses))
            return [_error_entry(address, "timeout") for address in addresses]
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Balance gateway error: %s", exc)
            return [_error_entry(address, str(exc)) for address in addresses]

        wallets = payload.get("wallets") if isinstance(payload, dict) else None
        by_address: dict[str, dict[str, Any]] = {}
        for item in wallets if isinstance(wallets, list) else []:
            if isinstance(item, dict) and item.get("wallet_id"):
                by_address[str(item["wallet_id"])] = item

        entries: list[BalanceEntry] = []
        for address in addresses:
            item = by_address.get(address)
            if item is None:
                entries.append(_error_entry(address, NO_RESPONSE))
                continue
            try:
                amount = float(item.get("balance") or 0.0)
            except (TypeError, ValueError):
                entries.append(_error_entry(address, f"Malformed balance: {item.get('balance')!r}"))
                continue
            entries.append(
                BalanceEntry(
                    address=address,
                    amount=amount,
                    status=str(item.get("status") or "inactive"),
                    error=item.get("error") or None,
                ),
            )
        return entries

    def close(self) -> None:
        self._client.close()


def _error_entry(address: str, error: str) -> BalanceEntry:
    return BalanceEntry(address=address, amount=0.0, status="inactive", error=error)


def _to_record(item: object) -> RelayRecord | None:
    if not isinstance(item, dict) or not item.get("id"):
        return None
    try:
        kind = int(item.get("kind") or 0)
        created_at = int(item.get("created_at") or 0)
    except (TypeError, ValueError):
        logger.debug("Skipping relay record %s with malformed kind or timestamp", item["id"])
        return None
    raw_tags = item.get("tags")
    tags = [
        [str(part) for part in tag]
        for tag in (raw_tags if isinstance(raw_tags, list) else [])
        if isinstance(tag, list)
    ]
    return RelayRecord(
        record_id=str(item["id"]),
        author=str(item.get("pubkey", "")),
        kind=kind,
        created_at=created_at,
        tags=tags,
        content=str(item.get("content") or ""),
    )
