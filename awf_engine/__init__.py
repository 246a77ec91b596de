"""AWF turn engine - bundle assembly, token budgets, act interpretation and turn orchestration."""

__version__ = "0.1.0"
ENGINE_VERSION = "1.0.0"
