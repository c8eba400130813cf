"""Pydantic models for generated questions and question metadata."""

from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

QUESTION_SCHEMA_VERSION = 1

Archetype = Literal[
    "direct_recall",
    "direct_application",
    "integrative",
    "discriminator",
    "exception_outlier",
]
CognitiveLoad = Literal["low", "medium", "high"]
Difficulty = Literal["easy", "balanced", "hard"]


class _MetadataBase(BaseModel):
    schema_version: int = Field(default=QUESTION_SCHEMA_VERSION)
    archetype: Optional[Archetype] = Field(None, description="Cognitive archetype")
    cognitive_load: Optional[CognitiveLoad] = Field(None, description="Information density")
    difficulty: Optional[Difficulty] = Field(None, description="Requested difficulty level")
    topic: Optional[str] = Field(None, description="Chapter topic the question targets")


class StandardMetadata(_MetadataBase):
    """Plain single-correct multiple choice question."""

    form: Literal["standard"] = "standard"
    negative_phrasing: bool = Field(
        default=False, description="Stem asks which option is NOT correct"
    )


class AssertionReasonMetadata(_MetadataBase):
    """Assertion (A) and Reason (R) question."""

    form: Literal["assertion_reason"] = "assertion_reason"
    assertion: Optional[str] = None
    reason: Optional[str] = None


class MatchFollowingMetadata(_MetadataBase):
    """Match List-I with List-II, answered with coded options."""

    form: Literal["match_following"] = "match_following"
    column_a: List[str] = Field(default_factory=list)
    column_b: List[str] = Field(default_factory=list)


class StatementBasedMetadata(_MetadataBase):
    """Numbered statements where the options pick the correct subset."""

    form: Literal["statement_based"] = "statement_based"
    statements: List[str] = Field(default_factory=list)


QuestionMetadata = Annotated[
    Union[
        StandardMetadata,
        AssertionReasonMetadata,
        MatchFollowingMetadata,
        StatementBasedMetadata,
    ],
    Field(discriminator="form"),
]

QUESTION_FORMS = ("standard", "assertion_reason", "match_following", "statement_based")


class GeneratedQuestion(BaseModel):
    """A question produced by the generator, before it is persisted."""

    question_text: str = Field(..., min_length=1, description="Question stem")
    options: Dict[str, str] = Field(..., description="Option label to option text")
    correct_answer: str = Field(..., min_length=1, description="Label of the correct option")
    explanation: Optional[str] = Field(None, description="Why the answer is correct")
    chapter_id: Optional[str] = Field(None, description="Chapter the question was drawn from")
    metadata: QuestionMetadata = Field(default_factory=StandardMetadata)

    @field_validator("options")
    @classmethod
    def validate_options(cls, value: Dict[str, str]) -> Dict[str, str]:
        if len(value) < 2:
            raise ValueError("A question needs at least two options")
        return value


class QuestionResponse(BaseModel):
    """Response model for a stored question."""

    id: str = Field(..., description="Question ID")
    paper_id: str
    section_id: str
    chapter_id: Optional[str] = None
    question_text: str
    options: Dict[str, str]
    correct_answer: str
    explanation: Optional[str] = None
    question_metadata: Optional[dict] = Field(None, description="Tagged question metadata")
    marks: float
    negative_marks: float
    is_selected: bool
    question_order: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class QuestionListResponse(BaseModel):
    """Response model for listing a section's questions."""

    questions: List[QuestionResponse]
    total: int
    selected: int


class SelectionRequest(BaseModel):
    """Request model for selecting or deselecting a question."""

    is_selected: bool = Field(..., description="Whether the question is part of the final paper")


class RegenerateQuestionRequest(BaseModel):
    """Request model for rewriting one question from a reviewer's instruction."""

    instruction: str = Field(
        ..., min_length=1, max_length=2000, description="What should change in the question"
    )
    difficulty: Optional[Difficulty] = Field(
        None, description="Difficulty for the rewrite, defaults to the paper's level"
    )
