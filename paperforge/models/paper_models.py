"""Pydantic models for papers and sections."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from paperforge.models.proofreading_models import ProofreadingRunRecord

DifficultyLevel = Literal["easy", "balanced", "hard"]
SectionStatus = Literal["pending", "ready", "in_review", "finalized"]
PaperStatus = Literal["draft", "finalized"]
DerivedPaperStatus = Literal["draft", "in_progress", "in_review", "ready_to_finalize", "finalized"]


class SectionCreate(BaseModel):
    """A section of a template-based paper."""

    subject: str = Field(..., min_length=1, max_length=100, description="Subject name")
    section_name: Optional[str] = Field(
        None, max_length=200, description="Display name, defaults to the subject"
    )
    question_count: int = Field(..., description="Target number of questions")
    marks_per_question: float = Field(default=4.0, ge=0)
    negative_marks: float = Field(default=0.0, ge=0)


class PaperCreate(BaseModel):
    """Request model for creating a paper.

    Template-based papers pass ``paper_template_id`` and ``sections``; legacy
    papers pass ``subject`` and ``question_count`` and get a single section.
    """

    institute_id: str = Field(..., min_length=1, description="Owning institute")
    title: str = Field(..., min_length=1, max_length=300, description="Paper title")
    difficulty_level: DifficultyLevel = Field(default="balanced")
    paper_template_id: Optional[str] = Field(None, description="Template the paper follows")
    sections: Optional[List[SectionCreate]] = Field(None, description="Template sections")
    subject: Optional[str] = Field(None, max_length=100, description="Subject for a legacy paper")
    question_count: Optional[int] = Field(None, description="Target count for a legacy paper")
    marks_per_question: float = Field(default=4.0, ge=0)
    negative_marks: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def validate_shape(self):
        """Require sections for templated papers and subject plus count for legacy ones."""
        if self.paper_template_id:
            if not self.sections:
                raise ValueError("Template-based papers need at least one section")
        elif not self.subject or self.question_count is None:
            raise ValueError("Legacy papers need 'subject' and 'question_count'")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "institute_id": "inst_01",
                "title": "NEET Mock Test 3",
                "difficulty_level": "balanced",
                "paper_template_id": "tpl_neet",
                "sections": [
                    {"subject": "Physics", "question_count": 45},
                    {"subject": "Chemistry", "question_count": 45},
                    {"subject": "Biology", "question_count": 90},
                ],
            }
        }
    }


class ChapterAssignment(BaseModel):
    """A chapter to draw questions from."""

    chapter_id: str = Field(..., min_length=1)
    chapter_name: Optional[str] = Field(None, description="Name used in prompts")


class AssignChaptersRequest(BaseModel):
    """Request model for assigning chapters to a section."""

    chapters: List[ChapterAssignment] = Field(..., min_length=1)


class SectionUpdate(BaseModel):
    """Request model for changing a section's target count."""

    question_count: int = Field(..., description="New target number of questions")


class GenerateSectionRequest(BaseModel):
    """Request model for generating a section's questions."""

    difficulty: Optional[DifficultyLevel] = Field(
        None, description="Overrides the paper's difficulty level"
    )
    source_documents: Optional[List[str]] = Field(
        None, description="Extra source text the questions should draw on"
    )


class SectionChapterResponse(BaseModel):
    """Response model for an assigned chapter."""

    chapter_id: str
    chapter_name: Optional[str] = None
    position: int

    class Config:
        from_attributes = True


class SectionResponse(BaseModel):
    """Response model for section data."""

    id: str
    paper_id: str
    subject: str
    section_name: str
    section_order: int
    question_count: int
    marks_per_question: float
    negative_marks: float
    status: SectionStatus
    chapters: List[SectionChapterResponse] = Field(default_factory=list)
    generated_count: int = 0
    selected_count: int = 0
    proofreading: Optional[ProofreadingRunRecord] = None
    chapters_assigned_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaperResponse(BaseModel):
    """Response model for paper data."""

    id: str
    institute_id: str
    title: str
    paper_template_id: Optional[str] = None
    question_count: int
    difficulty_level: DifficultyLevel
    status: PaperStatus
    derived_status: DerivedPaperStatus
    sections: List[SectionResponse] = Field(default_factory=list)
    finalized_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class GenerateSectionResponse(BaseModel):
    """Summary of a generate-then-proofread run."""

    section_id: str
    status: SectionStatus
    target_count: int
    questions_generated: int
    generation_calls: int
    tokens_used: int
    proofreading: ProofreadingRunRecord


class FinalizeResponse(BaseModel):
    """Response model for section or paper finalization."""

    id: str
    status: str
    finalized_at: datetime
    selected_count: int
