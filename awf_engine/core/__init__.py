"""Turn pipeline: bundle assembly, budgets, act interpretation, validation and orchestration."""

from .act_interpreter import ActInterpreter, ApplyResult
from .assembler import AssembleResult, AssemblerDeps, BundleAssembler, BundleMetrics
from .budget import TokenBudgetEnforcer
from .orchestrator import TurnOrchestrator
from .output_validator import ValidationReport, extract_awf, generate_repair_hint, validate_awf
from .state_transaction import TurnCommitter, TurnTransaction
from .turn import DryRunResult, TurnError, TurnOutcome, TurnResponse

__all__ = [
    "ActInterpreter", "ApplyResult",
    "AssembleResult", "AssemblerDeps", "BundleAssembler", "BundleMetrics",
    "TokenBudgetEnforcer",
    "TurnOrchestrator",
    "ValidationReport", "extract_awf", "generate_repair_hint", "validate_awf",
    "TurnCommitter", "TurnTransaction",
    "DryRunResult", "TurnError", "TurnOutcome", "TurnResponse",
]
