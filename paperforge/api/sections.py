"""Section API endpoints: chapter assignment, generation, proofreading, finalization."""

import logging

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from paperforge.api.responses import section_response
from paperforge.db.database import get_db
from paperforge.models.paper_models import (
    AssignChaptersRequest,
    FinalizeResponse,
    GenerateSectionRequest,
    GenerateSectionResponse,
    SectionResponse,
    SectionUpdate,
)
from paperforge.models.proofreading_models import ProofreadingRunRecord
from paperforge.models.question_models import QuestionListResponse, QuestionResponse
from paperforge.rate_limit import llm_rate_limit
from paperforge.services.llm_client import LLMClient, get_llm_client
from paperforge.services.paper_service import PaperService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sections", tags=["sections"])


@router.get("/{section_id}", response_model=SectionResponse, status_code=status.HTTP_200_OK)
async def get_section(
    section_id: str,
    db: Session = Depends(get_db),
):
    """Get a section with its chapters, counts and latest proofreading record."""
    return section_response(PaperService(db).get_section(section_id))


@router.patch("/{section_id}", response_model=SectionResponse, status_code=status.HTTP_200_OK)
async def update_section(
    section_id: str,
    update: SectionUpdate,
    db: Session = Depends(get_db),
):
    """
    Change a section's target question count.

    Only allowed while the section is pending or ready.
    """
    section = PaperService(db).update_section_question_count(section_id, update.question_count)
    return section_response(section)


@router.post(
    "/{section_id}/chapters", response_model=SectionResponse, status_code=status.HTTP_200_OK
)
async def assign_chapters(
    section_id: str,
    assignment: AssignChaptersRequest,
    db: Session = Depends(get_db),
):
    """
    Assign chapters to a section, replacing any previous assignment.

    Existing questions are deleted if the section had already been generated.
    """
    section = PaperService(db).assign_chapters(section_id, assignment.chapters)
    return section_response(section)


@router.post(
    "/{section_id}/generate",
    response_model=GenerateSectionResponse,
    status_code=status.HTTP_200_OK,
)
@llm_rate_limit
def generate_section(
    request: Request,
    section_id: str,
    body: GenerateSectionRequest,
    db: Session = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
):
    """
    Generate, persist and proofread a section's questions.

    Args:
        request: FastAPI request object (used by the rate limiter)
        section_id: Section ID
        body: Difficulty override and optional source documents
        db: Database session
        llm_client: LLM client

    Returns:
        Generation summary with the proofreading record
    """
    request_id = getattr(request.state, "request_id", "unknown")
    logger.info(
        f"Generation requested [{request_id}] for section {section_id}",
        extra={"request_id": request_id},
    )
    service = PaperService(db, llm_client=llm_client)
    return service.generate_section(
        section_id,
        difficulty=body.difficulty,
        source_documents=body.source_documents,
    )


@router.post(
    "/{section_id}/proofread",
    response_model=ProofreadingRunRecord,
    status_code=status.HTTP_200_OK,
)
@llm_rate_limit
def proofread_section(
    request: Request,
    section_id: str,
    db: Session = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
):
    """Re-run the proofreading pass on a section in review."""
    return PaperService(db, llm_client=llm_client).proofread_section(section_id)


@router.post(
    "/{section_id}/finalize", response_model=FinalizeResponse, status_code=status.HTTP_200_OK
)
async def finalize_section(
    section_id: str,
    db: Session = Depends(get_db),
):
    """Finalize a section once enough questions are selected."""
    section = PaperService(db).finalize_section(section_id)
    return FinalizeResponse(
        id=section.id,
        status=section.status,
        finalized_at=section.finalized_at,
        selected_count=sum(1 for q in section.questions if q.is_selected),
    )


@router.get(
    "/{section_id}/questions",
    response_model=QuestionListResponse,
    status_code=status.HTTP_200_OK,
)
async def list_section_questions(
    section_id: str,
    selected_only: bool = Query(False, description="Only return selected questions"),
    db: Session = Depends(get_db),
):
    """List a section's questions in order."""
    questions = PaperService(db).list_section_questions(section_id, selected_only=selected_only)
    return QuestionListResponse(
        questions=[QuestionResponse.model_validate(q) for q in questions],
        total=len(questions),
        selected=sum(1 for q in questions if q.is_selected),
    )
