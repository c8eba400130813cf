"""Pydantic models for chapter knowledge and material analysis."""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

KNOWLEDGE_SCHEMA_VERSION = 1

DepthLevel = Literal["basic", "intermediate", "advanced"]
KnowledgeStatus = Literal["pending", "analyzing", "completed", "failed"]
MaterialKind = Literal["scope", "style"]

# Ordering used when merging depth indicators; the deeper level wins
DEPTH_RANK: Dict[str, int] = {"basic": 1, "intermediate": 2, "advanced": 3}


class Subtopic(BaseModel):
    """A named subtopic under a chapter topic."""

    name: str = Field(..., min_length=1, description="Subtopic name")
    detail: Optional[str] = Field(None, description="What the material covers")
    depth: Optional[DepthLevel] = Field(None, description="Depth of coverage")
    keywords: List[str] = Field(default_factory=list, description="Key terms")


class ScopeAnalysis(BaseModel):
    """Topics and depth a chapter's materials cover."""

    schema_version: int = Field(default=KNOWLEDGE_SCHEMA_VERSION)
    topics: List[str] = Field(default_factory=list, description="Topics, insertion ordered")
    subtopics: Dict[str, List[Subtopic]] = Field(
        default_factory=dict, description="Subtopics keyed by topic"
    )
    depth_indicators: Dict[str, DepthLevel] = Field(
        default_factory=dict, description="Depth level keyed by topic"
    )
    terminology_mappings: Dict[str, str] = Field(
        default_factory=dict, description="Term to preferred phrasing"
    )
    extracted_from_materials: List[str] = Field(
        default_factory=list, description="Titles of the materials this scope was learned from"
    )
    last_updated: Optional[datetime] = Field(None, description="When the scope last changed")


class ExtractedQuestion(BaseModel):
    """A sample question pulled from a previous paper."""

    text: str = Field(..., min_length=1, description="Question stem")
    options: Optional[Dict[str, str]] = Field(None, description="Option label to text")
    answer: str = Field(default="", description="Correct answer")
    explanation: Optional[str] = Field(None)
    source_material_id: Optional[str] = Field(None)
    source_material_title: Optional[str] = Field(None)


class StyleExamples(BaseModel):
    """Sample questions showing how an institute phrases questions for a chapter."""

    schema_version: int = Field(default=KNOWLEDGE_SCHEMA_VERSION)
    questions: List[ExtractedQuestion] = Field(default_factory=list)
    extracted_from_materials: List[str] = Field(default_factory=list)


class ChapterKnowledgeResponse(BaseModel):
    """Response model for a chapter knowledge record."""

    id: str
    chapter_id: str
    institute_id: str
    status: KnowledgeStatus
    scope_analysis: Optional[ScopeAnalysis] = None
    style_examples: Optional[StyleExamples] = None
    material_ids: List[str] = Field(default_factory=list)
    analysis_attempt_id: Optional[str] = None
    analysis_started_at: Optional[datetime] = None
    analysis_completed_at: Optional[datetime] = None
    analysis_error: Optional[str] = None
    last_updated_by_material_id: Optional[str] = None
    version: int
    updated_at: datetime

    class Config:
        from_attributes = True


class AnalyzeMaterialRequest(BaseModel):
    """Request model for analyzing one uploaded material into chapter knowledge."""

    chapter_id: str = Field(..., min_length=1)
    institute_id: str = Field(..., min_length=1)
    material_id: str = Field(..., min_length=1)
    material_title: str = Field(default="", description="Human readable material title")
    material_text: str = Field(..., min_length=1, description="Extracted text of the material")
    material_kind: MaterialKind = Field(
        default="scope",
        description="scope for notes and theory, style for sample papers",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "chapter_id": "ch_cell_biology",
                "institute_id": "inst_01",
                "material_id": "mat_4f2a",
                "material_title": "Cell Biology Notes",
                "material_text": "The cell is the basic unit of life...",
                "material_kind": "scope",
            }
        }
    }


class AnalysisResult(BaseModel):
    """Outcome of a material analysis run."""

    success: bool
    chapter_id: str
    institute_id: str
    material_id: str
    knowledge_id: Optional[str] = None
    attempt_id: Optional[str] = None
    topics_count: int = 0
    style_question_count: int = 0
    tokens_used: int = 0
    error: Optional[str] = None
