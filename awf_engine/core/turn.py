"""Turn outcome types: the player-facing response and the Result-style wrapper."""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..enums import RetryState, TurnPhase
from ..errors import AWFError, ErrorKind
from ..metrics.collector import TurnMetrics
from ..models.summary import ApplySummary


class ResponseChoice(BaseModel):
    id: str
    label: str


class ResponseMeta(BaseModel):
    scn: str


class TurnResponse(BaseModel):
    """What the caller shows the player."""

    txt: str
    choices: list[ResponseChoice] = Field(default_factory=list)
    meta: ResponseMeta


class TurnError(BaseModel):
    kind: ErrorKind
    phase: TurnPhase
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, error: AWFError, phase: TurnPhase) -> "TurnError":
        return cls(kind=error.kind, phase=error.phase or phase, message=error.message, details=error.details)


@dataclass
class TurnOutcome:
    """Result of one turn. Exactly one of ``response`` / ``error`` is set."""

    response: Optional[TurnResponse] = None
    error: Optional[TurnError] = None
    metrics: TurnMetrics = field(default_factory=TurnMetrics)
    summary: Optional[ApplySummary] = None
    retry_state: RetryState = RetryState.INITIAL
    cause: Optional[AWFError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None

    def unwrap(self) -> TurnResponse:
        """Return the response, or raise the error that ended the turn."""
        if self.ok:
            return self.response
        if self.cause is not None:
            raise self.cause
        if self.error is not None:
            raise AWFError(self.error.message, phase=self.error.phase, details=self.error.details)
        raise AWFError("Turn produced no response")


@dataclass
class DryRunResult:
    """Phases 1-3 only: nothing is applied or persisted."""

    bundle: dict[str, Any]
    awf: Optional[dict[str, Any]]
    metrics: TurnMetrics
    validation_errors: list[str] = field(default_factory=list)
    retry_state: RetryState = RetryState.INITIAL
    error: Optional[TurnError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.awf is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bundle": self.bundle,
            "awf": self.awf,
            "metrics": asdict(self.metrics),
            "validation_errors": list(self.validation_errors),
            "retry_state": str(self.retry_state),
            "error": self.error.model_dump(mode="json") if self.error else None,
        }
