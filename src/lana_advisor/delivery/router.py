"""Chooses the single delivery channel for a completed task."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from lana_advisor.delivery.notifier import Notification, Notifier
from lana_advisor.delivery.registry import ConnectionRegistry
from lana_advisor.reasoning.prompts import language_code

logger = logging.getLogger(__name__)

DEEP_LINK = "/ai-advisor"
BODY_PREVIEW_CHARS = 120
TITLES = {
    "sl": "🧠 Enlightened AI — posodobljen odgovor",
}
DEFAULT_TITLE = "🧠 Enlightened AI — updated answer"


class DeliveryChannel(str, Enum):
    LIVE = "live"
    PUSH = "push"


@dataclass(slots=True)
class DeliveryOutcome:
    channel: DeliveryChannel
    delivered: bool
    count: int = 0


class DeliveryRouter:
    """Live push when the requester is connected, otherwise a notification.

    Exactly one channel is used per call. A failed live push is logged and
    does not fall back to the notifier.
    """

    def __init__(self, *, registry: ConnectionRegistry, notifier: Notifier) -> None:
        self._registry = registry
        self._notifier = notifier

    def deliver(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        requester_id: str,
        question: str,
        language: str,
        answer: dict[str, Any],
    ) -> DeliveryOutcome:
        if self._registry.is_live(requester_id):
            payload = {
                "taskId": task_id,
                "type": "updated_answer",
                "answer": answer,
                "originalQuestion": question,
            }
            try:
                self._registry.push_to(requester_id, payload)
            except Exception:  # noqa: BLE001
                logger.warning("Live push of task %s failed", task_id, exc_info=True)
                return DeliveryOutcome(channel=DeliveryChannel.LIVE, delivered=False)
            logger.info("Sent updated answer for task %s over live connection", task_id)
            return DeliveryOutcome(channel=DeliveryChannel.LIVE, delivered=True, count=1)

        notification = build_notification(
            task_id=task_id,
            language=language,
            final_answer=str(answer.get("final_answer") or ""),
        )
        try:
            result = self._notifier.notify(requester_id, notification)
        except Exception:  # noqa: BLE001
            logger.warning("Notification for task %s failed", task_id, exc_info=True)
            return DeliveryOutcome(channel=DeliveryChannel.PUSH, delivered=False)
        logger.info(
            "Push notification for task %s: delivered=%s count=%d",
            task_id,
            result.delivered,
            result.count,
        )
        return DeliveryOutcome(
            channel=DeliveryChannel.PUSH,
            delivered=result.delivered,
            count=result.count,
        )


def build_notification(*, task_id: str, language: str, final_answer: str) -> Notification:
    return Notification(
        title=TITLES.get(language_code(language), DEFAULT_TITLE),
        body=final_answer[:BODY_PREVIEW_CHARS] + "...",
        deep_link=DEEP_LINK,
        tag=f"ai-task-{task_id}",
    )
