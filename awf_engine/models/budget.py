"""Budget enforcement results. Built fresh per assembly; never persisted."""

from pydantic import BaseModel, Field

from ..enums import ReductionType


class Reduction(BaseModel):
    type: ReductionType
    description: str
    tokens_saved: int


class BudgetResult(BaseModel):
    within_budget: bool
    reductions: list[Reduction] = Field(default_factory=list)
    final_tokens: int

    @property
    def tokens_saved(self) -> int:
        return sum(r.tokens_saved for r in self.reductions)


class OutputBudgetCheck(BaseModel):
    within_budget: bool
    estimated_tokens: int
    max_tokens: int


class ModelConfig(BaseModel):
    max_tokens: int
    temperature: float
