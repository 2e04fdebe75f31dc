"""Store-and-forward push notifications for requesters without a live connection."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx
from sqlalchemy import delete as sa_delete
from sqlmodel import Session, select

from lana_advisor.errors import SubscriptionGoneError
from lana_advisor.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from lana_advisor.storage.sqlmodel_models import PushSubscription

logger = logging.getLogger(__name__)

GONE_STATUS_CODES = frozenset({404, 410})
DEFAULT_ICON = "/icon-192.png"


@dataclass(slots=True)
class Notification:
    title: str
    body: str
    deep_link: str
    tag: str | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "title": self.title,
                "body": self.body,
                "icon": DEFAULT_ICON,
                "badge": DEFAULT_ICON,
                "data": {"url": self.deep_link, "tag": self.tag},
            },
            ensure_ascii=False,
        )


@dataclass(slots=True)
class NotifyResult:
    delivered: bool
    count: int
    reason: str | None = None


@dataclass(slots=True)
class SubscriptionTarget:
    endpoint: str
    p256dh: str
    auth: str


class Notifier(Protocol):
    def notify(self, requester_id: str, notification: Notification) -> NotifyResult: ...


class PushSender(Protocol):
    """Sends one encrypted push message.

    Raises `SubscriptionGoneError` when the provider reports the
    subscription as gone.
    """

    def send(self, subscription: SubscriptionTarget, payload: str) -> None: ...


class HttpPushSender:
    """`PushSender` that hands messages to a push gateway over HTTP."""

    def __init__(
        self,
        *,
        gateway_url: str,
        timeout_seconds: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._gateway_url = gateway_url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=5.0))

    def send(self, subscription: SubscriptionTarget, payload: str) -> None:
        response = self._client.post(
            self._gateway_url,
            json={
                "subscription": {
                    "endpoint": subscription.endpoint,
                    "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
                },
                "payload": payload,
            },
        )
        if response.status_code in GONE_STATUS_CODES:
            raise SubscriptionGoneError(subscription.endpoint, response.status_code)
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


class PushSubscriptionNotifier:
    """Fans a notification out to every stored subscription of the requester."""

    def __init__(
        self,
        db_path: Path,
        *,
        sender: PushSender | None,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._sender = sender

    def close(self) -> None:
        self.engine.dispose()

    def add_subscription(self, requester_id: str, subscription: SubscriptionTarget) -> None:
        """Store a subscription, refreshing keys when the endpoint is already known."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(PushSubscription).where(
                    PushSubscription.requester_id == requester_id,
                    PushSubscription.endpoint == subscription.endpoint,
                ),
            ).one_or_none()
            if row is None:
                row = PushSubscription(
                    requester_id=requester_id,
                    endpoint=subscription.endpoint,
                    p256dh=subscription.p256dh,
                    auth=subscription.auth,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.p256dh = subscription.p256dh
                row.auth = subscription.auth
                row.updated_at = now
            session.add(row)
            session.commit()

    def subscriptions(self, requester_id: str) -> list[SubscriptionTarget]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PushSubscription).where(PushSubscription.requester_id == requester_id),
            ).all()
            return [
                SubscriptionTarget(endpoint=row.endpoint, p256dh=row.p256dh, auth=row.auth)
                for row in rows
            ]

    def notify(self, requester_id: str, notification: Notification) -> NotifyResult:
        if self._sender is None:
            return NotifyResult(delivered=False, count=0, reason="push sender not configured")
        targets = self.subscriptions(requester_id)
        if not targets:
            return NotifyResult(delivered=False, count=0, reason="no push subscriptions")

        payload = notification.to_json()
        sent = 0
        for target in targets:
            try:
                self._sender.send(target, payload)
            except SubscriptionGoneError as exc:
                logger.info("Removing gone push subscription (HTTP %d)", exc.status_code)
                self._remove(target.endpoint)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.warning("Push to %s failed: %s", target.endpoint[:48], exc)
                continue
            sent += 1
        return NotifyResult(delivered=sent > 0, count=sent)

    def _remove(self, endpoint: str) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(PushSubscription).where(PushSubscription.endpoint == endpoint))
            session.commit()
