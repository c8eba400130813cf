"""Material analysis service: turns uploaded chapter material into cached knowledge."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from paperforge.config import settings
from paperforge.exceptions import (
    LLMProviderException,
    PaperForgeException,
    UnrecoverableParseError,
)
from paperforge.models.knowledge_models import (
    DEPTH_RANK,
    AnalysisResult,
    AnalyzeMaterialRequest,
    ExtractedQuestion,
    ScopeAnalysis,
    StyleExamples,
)
from paperforge.models.usage_models import TokenUsage
from paperforge.services.knowledge_service import ChapterKnowledgeService
from paperforge.services.llm_client import LLMClient, LLMConfig
from paperforge.services.usage_service import UsageService
from paperforge.utils.json_repair import extract_items, repair
from paperforge.utils.question_format import normalize_options, pick
from paperforge.utils.retry import retry_call

logger = logging.getLogger(__name__)

# Material text beyond this is cut before prompting
MAX_MATERIAL_CHARS = 60000

SCOPE_SYSTEM_PROMPT = """You analyse study material for a single textbook chapter.
Identify what the material covers and how deeply. Respond with JSON only."""

SCOPE_PROMPT_TEMPLATE = """Material title: {title}

Return a JSON object with these keys:
- "topics": list of topic names covered
- "subtopics": object mapping each topic to a list of {{"name", "detail", "depth", "keywords"}}
- "depth_indicators": object mapping each topic to "basic", "intermediate" or "advanced"
- "terminology_mappings": object mapping terms to the phrasing this material uses

Material:
{text}"""

STYLE_SYSTEM_PROMPT = """You extract multiple choice questions from previous exam papers,
preserving their exact wording. Respond with JSON only."""

STYLE_PROMPT_TEMPLATE = """Paper title: {title}

Return a JSON object {{"questions": [...]}} where each question has
"text", "options" (object of label to option text), "answer" and "explanation".

Paper:
{text}"""


class MaterialAnalysisService:
    """Service for analysing chapter material with the LLM."""

    def __init__(self, db: Session, llm_client: Optional[LLMClient] = None):
        """
        Initialize material analysis service.

        Args:
            db: Database session
            llm_client: LLM client instance
        """
        self.db = db
        self.llm = llm_client or LLMClient()
        self.knowledge = ChapterKnowledgeService(db)
        self.usage = UsageService(db)
        self.model = settings.analysis_model

    def analyze_material(self, request: AnalyzeMaterialRequest) -> AnalysisResult:
        """
        Analyse one material and merge the result into the chapter's knowledge.

        Failures are recorded on the knowledge record and returned, never
        raised, and previously cached knowledge is left untouched.

        Args:
            request: Material to analyse

        Returns:
            AnalysisResult describing what was learned
        """
        record, attempt_id = self.knowledge.mark_analyzing(
            request.chapter_id, request.institute_id
        )
        title = request.material_title or request.material_id
        spent: List[TokenUsage] = []

        def attempt() -> Tuple[Optional[ScopeAnalysis], Optional[StyleExamples]]:
            return self._analyze_once(request, title, spent)

        try:
            scope, style = retry_call(
                attempt,
                max_attempts=settings.analysis_max_attempts,
                delay_sec=settings.analysis_retry_delay_sec,
                backoff=2.0,
                retry_on=(LLMProviderException, UnrecoverableParseError, ValidationError),
                label=f"Analysis of material {request.material_id}",
            )
            record = self.knowledge.upsert_merge(
                request.chapter_id,
                request.institute_id,
                request.material_id,
                title,
                scope=scope,
                style=style,
            )
            record = self.knowledge.mark_completed(
                request.chapter_id, request.institute_id, attempt_id
            )
        except Exception as e:
            # Any failure after mark_analyzing must leave the record failed, not analyzing
            self.db.rollback()
            if isinstance(e, PaperForgeException):
                error = e.message
                logger.error(f"Analysis of material {request.material_id} failed: {error}")
            else:
                error = f"{type(e).__name__}: {e}"
                logger.exception(f"Analysis of material {request.material_id} failed: {error}")
            self.knowledge.mark_failed(
                request.chapter_id, request.institute_id, attempt_id, error
            )
            self._log_usage(request, spent)
            return AnalysisResult(
                success=False,
                chapter_id=request.chapter_id,
                institute_id=request.institute_id,
                material_id=request.material_id,
                knowledge_id=record.id,
                attempt_id=attempt_id,
                tokens_used=sum(u.total_tokens for u in spent),
                error=error,
            )

        self._log_usage(request, spent)
        logger.info(
            f"Analysed material {request.material_id} ({request.material_kind}) "
            f"for chapter {request.chapter_id}"
        )
        return AnalysisResult(
            success=True,
            chapter_id=request.chapter_id,
            institute_id=request.institute_id,
            material_id=request.material_id,
            knowledge_id=record.id,
            attempt_id=attempt_id,
            topics_count=len(scope.topics) if scope else 0,
            style_question_count=len(style.questions) if style else 0,
            tokens_used=sum(u.total_tokens for u in spent),
        )

    def _analyze_once(
        self, request: AnalyzeMaterialRequest, title: str, spent: List[TokenUsage]
    ) -> Tuple[Optional[ScopeAnalysis], Optional[StyleExamples]]:
        text = request.material_text[:MAX_MATERIAL_CHARS]
        if request.material_kind == "style":
            prompt = STYLE_PROMPT_TEMPLATE.format(title=title, text=text)
            system_prompt = STYLE_SYSTEM_PROMPT
        else:
            prompt = SCOPE_PROMPT_TEMPLATE.format(title=title, text=text)
            system_prompt = SCOPE_SYSTEM_PROMPT

        response = self.llm.generate(
            prompt,
            LLMConfig(model=self.model, system_prompt=system_prompt, temperature=0.2),
        )
        spent.append(response.usage)
        value = repair(response.text)

        if request.material_kind == "style":
            return None, _build_style(value, request.material_id, title)
        return _build_scope(value, title), None

    def _log_usage(self, request: AnalyzeMaterialRequest, spent: List[TokenUsage]) -> None:
        if not spent:
            return
        total = TokenUsage()
        for usage in spent:
            total = total + usage
        self.usage.log_usage(
            institute_id=request.institute_id,
            chapter_id=request.chapter_id,
            operation_type="analyze",
            model=self.model,
            usage=total,
        )


def _build_scope(value: Any, title: str) -> ScopeAnalysis:
    if not isinstance(value, dict):
        raise UnrecoverableParseError(
            "Scope analysis must be a JSON object",
            details={"received_type": type(value).__name__},
        )

    subtopics: Dict[str, List[Dict[str, Any]]] = {}
    for topic, items in _as_dict(value.get("subtopics")).items():
        if not isinstance(items, list):
            continue
        subtopics[topic] = [
            {"name": item} if isinstance(item, str) else item
            for item in items
            if isinstance(item, (str, dict))
        ]

    # Unknown depth labels are dropped rather than failing the whole analysis
    depth_indicators = {}
    for topic, depth in _as_dict(value.get("depth_indicators")).items():
        level = str(depth).strip().lower()
        if level in DEPTH_RANK:
            depth_indicators[topic] = level

    return ScopeAnalysis(
        topics=[str(topic) for topic in _as_list(value.get("topics"))],
        subtopics=subtopics,
        depth_indicators=depth_indicators,
        terminology_mappings={
            str(term): str(phrase)
            for term, phrase in _as_dict(value.get("terminology_mappings")).items()
        },
        extracted_from_materials=[title],
        last_updated=datetime.now(timezone.utc),
    )


def _build_style(value: Any, material_id: str, title: str) -> StyleExamples:
    questions = []
    for item in extract_items(value, "questions"):
        if not isinstance(item, dict):
            continue
        options = normalize_options(item.get("options")) or None
        try:
            questions.append(
                ExtractedQuestion(
                    text=pick(item, "text", "question", "questionText", default=""),
                    options=options,
                    answer=str(pick(item, "answer", "correctAnswer", "correct_answer", default="")),
                    explanation=item.get("explanation"),
                    source_material_id=material_id,
                    source_material_title=title,
                )
            )
        except ValidationError as e:
            logger.warning(f"Skipping malformed style example from {material_id}: {e}")
    return StyleExamples(questions=questions, extracted_from_materials=[title])


def _as_dict(value: Any) -> Dict[str, Any]:
    # Models sometimes answer with a list where an object was asked for
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []
