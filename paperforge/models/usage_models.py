"""Pydantic models for token usage and cost tracking."""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ApiMode = Literal["standard", "batch"]
OperationType = Literal["generate", "regenerate", "proofread", "analyze"]


class TokenUsage(BaseModel):
    """Token counts reported by the LLM provider for one call."""

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class CostBreakdown(BaseModel):
    """Cost of a token usage figure in USD and INR."""

    input_cost_usd: float = 0.0
    output_cost_usd: float = 0.0
    total_cost_usd: float = 0.0
    total_cost_inr: float = 0.0


class UsageRecordResponse(BaseModel):
    """Response model for a single ledger entry."""

    id: str
    institute_id: str
    paper_id: Optional[str] = None
    section_id: Optional[str] = None
    chapter_id: Optional[str] = None
    operation_type: str
    model_used: str
    api_mode: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float
    cost_inr: float
    questions_generated: int
    usage_date: str
    created_at: datetime

    class Config:
        from_attributes = True


class UsageRecordListResponse(BaseModel):
    """Response model for listing ledger entries."""

    records: List[UsageRecordResponse]
    total: int


class UsageSummaryResponse(BaseModel):
    """Daily or monthly usage totals with breakdowns."""

    period_type: Literal["daily", "monthly"]
    period_key: str
    total_operations: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    total_cost_inr: float = 0.0
    total_questions: int = 0
    by_institute: Dict[str, dict] = Field(default_factory=dict)
    by_model: Dict[str, dict] = Field(default_factory=dict)
    by_operation: Dict[str, dict] = Field(default_factory=dict)
