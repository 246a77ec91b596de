"""
Error taxonomy for the turn pipeline.

Every fatal condition raised inside the pipeline is an AWFError subclass
carrying an ErrorKind and, once the orchestrator has seen it, the phase
it surfaced in. Non-fatal per-act problems never raise; they accumulate
in ApplySummary.violations instead.
"""

from enum import StrEnum
from typing import Any

from .enums import TurnPhase


class ErrorKind(StrEnum):
    NOT_FOUND = "not_found"
    BUDGET_EXCEEDED = "budget_exceeded"
    MODEL_ERROR = "model_error"
    CONTRACT_VIOLATION = "contract_violation"
    VALIDATION_FAILED = "validation_failed"
    APPLY_ERROR = "apply_error"


class AWFError(Exception):
    """Base class for fatal turn-pipeline failures."""

    kind: ErrorKind = ErrorKind.MODEL_ERROR

    def __init__(self, message: str, *, phase: TurnPhase | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.details = details or {}

    def with_phase(self, phase: TurnPhase) -> "AWFError":
        """Attach phase context if none was set closer to the failure."""
        if self.phase is None:
            self.phase = phase
        return self

    def __str__(self) -> str:
        if self.phase:
            return f"[{self.phase}] {self.message}"
        return self.message


class NotFound(AWFError):
    """A required document, session or game state could not be resolved."""
    kind = ErrorKind.NOT_FOUND


class BudgetExceeded(AWFError):
    """The bundle is still over the input ceiling after the full reduction cascade."""
    kind = ErrorKind.BUDGET_EXCEEDED


class ModelError(AWFError):
    """The model provider failed (after its own transient-error retries)."""
    kind = ErrorKind.MODEL_ERROR


class ContractViolation(AWFError):
    """First/subsequent-turn act rules were broken; no state was mutated."""
    kind = ErrorKind.CONTRACT_VIOLATION


class ValidationFailed(AWFError):
    """The structured reply was still invalid after the single repair retry."""
    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, errors: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class ApplyError(AWFError):
    """Persisting the new game state failed; prior state was restored."""
    kind = ErrorKind.APPLY_ERROR


class StaleStateError(ApplyError):
    """Optimistic version check failed: another turn committed first."""

    def __init__(self, game_id: str, expected: int, actual: int):
        super().__init__(
            f"Game {game_id} is at version {actual}, expected {expected}",
            details={"game_id": game_id, "expected": expected, "actual": actual},
        )
