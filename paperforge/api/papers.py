"""Paper API endpoints."""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from paperforge.api.responses import paper_response
from paperforge.db.database import get_db
from paperforge.models.paper_models import FinalizeResponse, PaperCreate, PaperResponse
from paperforge.services.paper_service import PaperService
from paperforge.services.section_rules import count_selected

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/papers", tags=["papers"])


@router.post("", response_model=PaperResponse, status_code=status.HTTP_201_CREATED)
async def create_paper(
    paper_data: PaperCreate,
    db: Session = Depends(get_db),
):
    """
    Create a paper and its sections.

    Args:
        paper_data: Paper creation data
        db: Database session

    Returns:
        Created paper with its pending sections
    """
    paper = PaperService(db).create_paper(paper_data)
    return paper_response(paper)


@router.get("/{paper_id}", response_model=PaperResponse, status_code=status.HTTP_200_OK)
async def get_paper(
    paper_id: str,
    db: Session = Depends(get_db),
):
    """
    Get a paper by ID, with sections and derived status.

    Args:
        paper_id: Paper ID
        db: Database session
    """
    return paper_response(PaperService(db).get_paper(paper_id))


@router.post(
    "/{paper_id}/finalize", response_model=FinalizeResponse, status_code=status.HTTP_200_OK
)
async def finalize_paper(
    paper_id: str,
    db: Session = Depends(get_db),
):
    """
    Finalize a paper.

    Template-based papers need every section finalized; legacy papers need
    exactly the target number of questions selected.
    """
    paper = PaperService(db).finalize_paper(paper_id)
    return FinalizeResponse(
        id=paper.id,
        status=paper.status,
        finalized_at=paper.finalized_at,
        selected_count=count_selected(paper),
    )
