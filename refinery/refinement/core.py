"""
Refinement protocol core: phase graph and protocol errors.
"""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    IDLE = "IDLE"
    DRAFTING = "DRAFTING"
    AWAITING_USER = "AWAITING_USER"
    CRITIQUING = "CRITIQUING"
    REFINING = "REFINING"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"


TERMINAL_PHASES = frozenset({Phase.APPROVED, Phase.CANCELLED})

ALLOWED_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.IDLE: {Phase.DRAFTING},
    Phase.DRAFTING: {Phase.AWAITING_USER, Phase.CRITIQUING},
    Phase.AWAITING_USER: {Phase.DRAFTING, Phase.CRITIQUING, Phase.REFINING, Phase.APPROVED},
    Phase.CRITIQUING: {Phase.REFINING, Phase.AWAITING_USER},
    Phase.REFINING: {Phase.AWAITING_USER},
    Phase.APPROVED: set(),
    Phase.CANCELLED: set(),
}


class ProtocolError(RuntimeError):
    """Programming error: the refinement protocol was driven out of order."""


class InvalidStateTransition(ProtocolError):
    def __init__(self, current: Phase, target: Phase):
        super().__init__(f"Invalid transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class MissingDraftError(ProtocolError):
    """Raised when critique or refinement is requested without a draft."""


class MissingArtifactError(ProtocolError):
    """Raised when approval is requested before the Refiner produced an artifact."""


class ModelInvocationError(RuntimeError):
    """Raised when the model channel fails; recoverable at the caller's discretion."""


class ModelTimeoutError(ModelInvocationError):
    def __init__(self, persona: str, elapsed_seconds: float, timeout_seconds: float):
        super().__init__(
            f"{persona} call timed out after {elapsed_seconds:.1f}s "
            f"(limit {timeout_seconds:.0f}s)"
        )
        self.persona = persona
        self.elapsed_seconds = elapsed_seconds
        self.timeout_seconds = timeout_seconds


def can_transition(current: Phase, target: Phase) -> bool:
    # Cancellation is reachable from every phase.
    if target is Phase.CANCELLED:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


def check_transition(current: Phase, target: Phase) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(current, target)
