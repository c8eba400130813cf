"""Conversions from ORM objects to API response models."""

from paperforge.db.models import Paper, Section
from paperforge.models.paper_models import (
    PaperResponse,
    SectionChapterResponse,
    SectionResponse,
)
from paperforge.models.proofreading_models import ProofreadingRunRecord
from paperforge.services.section_rules import derive_paper_status


def section_response(section: Section) -> SectionResponse:
    proofreading = (section.batch_metadata or {}).get("proofreading")
    return SectionResponse(
        id=section.id,
        paper_id=section.paper_id,
        subject=section.subject,
        section_name=section.section_name,
        section_order=section.section_order,
        question_count=section.question_count,
        marks_per_question=section.marks_per_question,
        negative_marks=section.negative_marks,
        status=section.status,
        chapters=[SectionChapterResponse.model_validate(c) for c in section.chapters],
        generated_count=len(section.questions),
        selected_count=sum(1 for q in section.questions if q.is_selected),
        proofreading=ProofreadingRunRecord.model_validate(proofreading) if proofreading else None,
        chapters_assigned_at=section.chapters_assigned_at,
        finalized_at=section.finalized_at,
        created_at=section.created_at,
        updated_at=section.updated_at,
    )


def paper_response(paper: Paper) -> PaperResponse:
    return PaperResponse(
        id=paper.id,
        institute_id=paper.institute_id,
        title=paper.title,
        paper_template_id=paper.paper_template_id,
        question_count=paper.question_count,
        difficulty_level=paper.difficulty_level,
        status=paper.status,
        derived_status=derive_paper_status(paper),
        sections=[section_response(section) for section in paper.sections],
        finalized_at=paper.finalized_at,
        created_at=paper.created_at,
        updated_at=paper.updated_at,
    )
