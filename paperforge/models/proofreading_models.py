"""Pydantic models for the proofreading pass."""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class MinimalQuestion(BaseModel):
    """The subset of a question sent to the proofreading model."""

    id: str
    question: str
    options: Dict[str, str]
    correctAnswer: str
    explanation: Optional[str] = None


class CorrectedQuestion(BaseModel):
    """Replacement content returned for a flagged question."""

    id: Optional[str] = None
    question: str = Field(..., min_length=1)
    options: Dict[str, str]
    correctAnswer: str = Field(..., min_length=1)
    explanation: Optional[str] = None


class QuestionCorrection(BaseModel):
    """One correction emitted by the proofreading model."""

    questionId: str = Field(..., min_length=1)
    issue: str = Field(default="", description="What was wrong")
    corrected: CorrectedQuestion


class ProofreadingRunRecord(BaseModel):
    """Statistics of the latest proofreading run, stored on the section."""

    status: Literal["completed", "failed"]
    started_at: datetime
    completed_at: Optional[datetime] = None
    batches_planned: int = 0
    batches_processed: int = 0
    questions_checked: int = 0
    issues_found: int = 0
    corrections_applied: List[str] = Field(default_factory=list)
    skipped_correction_ids: List[str] = Field(default_factory=list)
    total_tokens_used: int = 0
    total_cost_usd: float = 0.0
    total_cost_inr: float = 0.0
    error: Optional[str] = None
