"""Question API endpoints."""

import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from paperforge.db.database import get_db
from paperforge.models.question_models import (
    QuestionResponse,
    RegenerateQuestionRequest,
    SelectionRequest,
)
from paperforge.rate_limit import llm_rate_limit
from paperforge.services.llm_client import LLMClient, get_llm_client
from paperforge.services.paper_service import PaperService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/questions", tags=["questions"])


@router.get("/{question_id}", response_model=QuestionResponse, status_code=status.HTTP_200_OK)
async def get_question(
    question_id: str,
    db: Session = Depends(get_db),
):
    """Get a question by ID."""
    return QuestionResponse.model_validate(PaperService(db).get_question(question_id))


@router.post(
    "/{question_id}/selection",
    response_model=QuestionResponse,
    status_code=status.HTTP_200_OK,
)
async def set_selection(
    question_id: str,
    selection: SelectionRequest,
    db: Session = Depends(get_db),
):
    """
    Select or deselect a question for the final paper.

    Only allowed while the question's section is in review.
    """
    question = PaperService(db).set_question_selection(question_id, selection.is_selected)
    return QuestionResponse.model_validate(question)


@router.post(
    "/{question_id}/regenerate",
    response_model=QuestionResponse,
    status_code=status.HTTP_200_OK,
)
@llm_rate_limit
def regenerate_question(
    request: Request,
    question_id: str,
    body: RegenerateQuestionRequest,
    db: Session = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
):
    """
    Rewrite one question from a reviewer's instruction.

    The question keeps its ID and selection. Only allowed while its section
    is in review.
    """
    request_id = getattr(request.state, "request_id", "unknown")
    logger.info(
        f"Regeneration requested [{request_id}] for question {question_id}",
        extra={"request_id": request_id},
    )
    question = PaperService(db, llm_client=llm_client).regenerate_question(
        question_id, body.instruction, difficulty=body.difficulty
    )
    return QuestionResponse.model_validate(question)
