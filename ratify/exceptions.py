"""Typed errors raised by the approval workflow engine.

Every error carries a machine-readable ``code`` class attribute and the
identifiers it concerns, so callers can branch on type instead of parsing
messages. None of them is fatal: callers reload state and retry, or surface
the error to the end user.
"""

from __future__ import annotations

from typing import Optional


class RatifyError(Exception):
    """Base exception for all engine errors."""

    code: str = "RATIFY_ERROR"


class NotFound(RatifyError):
    """Unknown id, or the step execution is no longer pending."""

    code: str = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str, detail: Optional[str] = None):
        self.kind = kind
        self.identifier = identifier
        message = f"{kind} not found: {identifier}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class Forbidden(RatifyError):
    """Actor lacks authority over a step execution or instance."""

    code: str = "FORBIDDEN"

    def __init__(self, actor_id: str, target_id: str):
        self.actor_id = actor_id
        self.target_id = target_id
        super().__init__(f"Actor {actor_id} is not authorised to act on {target_id}")


class InvalidDecision(RatifyError):
    """Decision value outside the closed set of decisions."""

    code: str = "INVALID_DECISION"

    def __init__(self, decision: object):
        self.decision = decision
        super().__init__(f"Invalid decision: {decision!r}")


class StaleState(RatifyError):
    """A concurrent transition committed first.

    Reload the step execution or instance and re-check before acting again.
    """

    code: str = "STALE_STATE"

    def __init__(self, identifier: str, expected_version: int, kind: str = "StepExecution"):
        self.identifier = identifier
        self.expected_version = expected_version
        self.kind = kind
        super().__init__(f"{kind} {identifier} changed since version {expected_version}")


class UnroutableStep(RatifyError):
    """No eligible assignee exists for a step."""

    code: str = "UNROUTABLE_STEP"

    def __init__(self, step_name: str, reason: str):
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"Step '{step_name}' cannot be routed: {reason}")


class InvalidTransition(RatifyError):
    """Requested state change is not allowed from the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, subject: str, from_state: str, to_state: str):
        self.subject = subject
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"{subject}: cannot move from {from_state} to {to_state}")


class DefinitionError(RatifyError):
    """Workflow definition is malformed or unusable."""

    code: str = "DEFINITION_ERROR"


class SubscriberLimitExceeded(RatifyError):
    """Event stream already has the maximum number of subscribers."""

    code: str = "SUBSCRIBER_LIMIT_EXCEEDED"

    def __init__(self, topic: str, limit: int):
        self.topic = topic
        self.limit = limit
        super().__init__(f"Topic {topic} already has {limit} subscribers")


__all__ = [
    "DefinitionError",
    "Forbidden",
    "InvalidDecision",
    "InvalidTransition",
    "NotFound",
    "RatifyError",
    "StaleState",
    "SubscriberLimitExceeded",
    "UnroutableStep",
]
