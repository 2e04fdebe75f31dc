"""Exceptions raised by the task engine."""

from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for task engine failures."""


class CompletionError(EngineError):
    """The language-completion service failed or returned an unusable response."""


class PipelineError(EngineError):
    """The reasoning pipeline could not run to the end."""


class SubscriptionGoneError(EngineError):
    """The push provider reports a subscription as permanently gone."""

    def __init__(self, endpoint: str, status_code: int) -> None:
        super().__init__(f"Push subscription gone (HTTP {status_code}): {endpoint}")
        self.endpoint = endpoint
        self.status_code = status_code
