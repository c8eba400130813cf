"""Chapter knowledge API endpoints."""

import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from paperforge.db.database import get_db
from paperforge.exceptions import NotFoundException
from paperforge.models.knowledge_models import (
    AnalysisResult,
    AnalyzeMaterialRequest,
    ChapterKnowledgeResponse,
)
from paperforge.rate_limit import llm_rate_limit
from paperforge.services.analysis_service import MaterialAnalysisService
from paperforge.services.knowledge_service import ChapterKnowledgeService
from paperforge.services.llm_client import LLMClient, get_llm_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/knowledge", tags=["knowledge"])


@router.get(
    "/{institute_id}/{chapter_id}",
    response_model=ChapterKnowledgeResponse,
    status_code=status.HTTP_200_OK,
)
async def get_knowledge(
    institute_id: str,
    chapter_id: str,
    db: Session = Depends(get_db),
):
    """Get the cached knowledge for a chapter at an institute."""
    record = ChapterKnowledgeService(db).fetch(chapter_id, institute_id)
    if record is None:
        raise NotFoundException(
            f"No knowledge for chapter {chapter_id} at institute {institute_id}"
        )
    return ChapterKnowledgeResponse.model_validate(record)


@router.post("/analyze", response_model=AnalysisResult, status_code=status.HTTP_200_OK)
@llm_rate_limit
def analyze_material(
    request: Request,
    body: AnalyzeMaterialRequest,
    db: Session = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
):
    """
    Analyse a material and merge what it teaches into the chapter's knowledge.

    Analysis failures are reported in the result with ``success=False``;
    earlier knowledge is kept.
    """
    return MaterialAnalysisService(db, llm_client=llm_client).analyze_material(body)


@router.delete(
    "/{institute_id}/{chapter_id}/materials/{material_id}",
    response_model=ChapterKnowledgeResponse,
    status_code=status.HTTP_200_OK,
)
async def remove_material(
    institute_id: str,
    chapter_id: str,
    material_id: str,
    db: Session = Depends(get_db),
):
    """Forget a deleted material. Knowledge already learned from it is kept."""
    record = ChapterKnowledgeService(db).remove_material(chapter_id, institute_id, material_id)
    return ChapterKnowledgeResponse.model_validate(record)
