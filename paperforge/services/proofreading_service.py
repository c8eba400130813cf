"""Proofreading pass: LLM review of a section's questions with targeted corrections.

Runs after generation. Questions are sent in adaptively sized batches with a
minimal payload; the model returns corrections only for the questions it
flags, and those are written back in place by question ID.
"""

import json
import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from paperforge.config import settings
from paperforge.db.models import Question, Section
from paperforge.exceptions import (
    LLMProviderException,
    RetryExhaustedException,
    UnrecoverableParseError,
)
from paperforge.models.proofreading_models import (
    MinimalQuestion,
    ProofreadingRunRecord,
    QuestionCorrection,
)
from paperforge.models.usage_models import TokenUsage
from paperforge.services.llm_client import LLMClient, LLMConfig
from paperforge.services.usage_service import UsageService, calculate_cost
from paperforge.utils.json_repair import extract_items, repair
from paperforge.utils.question_format import normalize_answer, normalize_options
from paperforge.utils.retry import retry_call

logger = logging.getLogger(__name__)

PROOFREAD_PROMPT_TEMPLATE = """You are a quality assurance expert reviewing multiple choice exam questions.
Be strict: flag every question with an error. When in doubt, flag it.

Check these {count} questions for exactly these error types:
1. Correct answer not among the options
2. Wrong option marked as correct
3. Answer key format mismatch (e.g. "a" when options use A, B, C, D)
4. Malformed question text (truncated, missing information, broken encoding)
5. Duplicate options
6. Explanation contradicts the marked answer
7. Explanation shows internal reasoning or self-correction ("Wait", "Let me re-check")
8. Poor language (grammar errors, unclear phrasing, stale text)

Do not judge archetypes, difficulty or cognitive load.

QUESTIONS TO REVIEW:
{questions}

Return only this JSON object:
{{
  "corrections": [
    {{
      "questionId": "<id of the flagged question>",
      "issue": "<brief description of the error>",
      "corrected": {{
        "id": "<same id>",
        "question": "corrected question text",
        "options": {{"A": "...", "B": "...", "C": "...", "D": "..."}},
        "correctAnswer": "correct option label",
        "explanation": "corrected explanation"
      }}
    }}
  ]
}}
If every question is correct, return {{"corrections": []}}."""


def question_length(question: Question) -> int:
    """Serialized size of the fields the proofreader sees."""
    return (
        len(question.question_text or "")
        + len(json.dumps(question.options or {}))
        + len(question.explanation or "")
    )


def _even_split(total: int, batches: int) -> List[int]:
    sizes = []
    remaining = total
    for index in range(batches):
        size = math.ceil(remaining / (batches - index))
        sizes.append(size)
        remaining -= size
    return sizes


def compute_batch_sizes(total: int, avg_length: float) -> List[int]:
    """
    Plan proofreading batch sizes.

    Aims for batches of the optimal size, spread evenly. If any planned batch
    exceeds the complexity ceiling (80 questions for short questions, 60 for
    long ones) by more than the safety tolerance, re-plans with the ceiling
    as the target size instead.

    Args:
        total: Number of questions in the section
        avg_length: Average serialized question length in characters

    Returns:
        Batch sizes in order, summing to ``total``
    """
    if total <= 0:
        return []

    ceiling = (
        settings.proofread_low_complexity_ceiling
        if avg_length < settings.proofread_complexity_threshold
        else settings.proofread_high_complexity_ceiling
    )
    optimal = settings.proofread_optimal_batch_size
    if total <= optimal:
        return [total]

    sizes = _even_split(total, math.ceil(total / optimal))
    max_allowed = ceiling * (1 + settings.proofread_safety_tolerance)
    if any(size > max_allowed for size in sizes):
        sizes = _even_split(total, math.ceil(total / ceiling))
    return sizes


def to_minimal_payload(questions: List[Question]) -> List[dict]:
    return [
        MinimalQuestion(
            id=question.id,
            question=question.question_text or "",
            options=question.options or {},
            correctAnswer=question.correct_answer or "",
            explanation=question.explanation or "",
        ).model_dump()
        for question in questions
    ]


def build_proofreading_prompt(payload: List[dict]) -> str:
    return PROOFREAD_PROMPT_TEMPLATE.format(
        count=len(payload), questions=json.dumps(payload, indent=2, ensure_ascii=False)
    )


class ProofreadingService:
    """Service for running the proofreading pass over a section."""

    def __init__(self, db: Session, llm_client: Optional[LLMClient] = None):
        """
        Initialize proofreading service.

        Args:
            db: Database session
            llm_client: LLM client instance
        """
        self.db = db
        self.llm = llm_client or LLMClient()
        self.usage = UsageService(db)
        self.model = settings.proofreading_model

    def run(self, section_id: str) -> ProofreadingRunRecord:
        """
        Proofread every question in a section.

        Batches run in order. A batch that fails after its retry stops the
        run: corrections from earlier batches stay applied and the record is
        stored with status "failed" and the partial statistics. This method
        does not raise.

        Args:
            section_id: Section to proofread

        Returns:
            The run record, also stored at ``batch_metadata["proofreading"]``
        """
        record = ProofreadingRunRecord(status="completed", started_at=datetime.now(timezone.utc))
        section = self.db.query(Section).filter(Section.id == section_id).first()
        if section is None:
            record.status = "failed"
            record.error = f"Section {section_id} not found"
            record.completed_at = datetime.now(timezone.utc)
            return record

        institute_id = section.paper.institute_id
        paper_id = section.paper_id

        questions = (
            self.db.query(Question)
            .filter(Question.section_id == section_id)
            .order_by(Question.question_order)
            .all()
        )
        by_id: Dict[str, Question] = {question.id: question for question in questions}
        spent: List[TokenUsage] = []

        if questions:
            avg_length = sum(question_length(q) for q in questions) / len(questions)
            sizes = compute_batch_sizes(len(questions), avg_length)
            record.batches_planned = len(sizes)
            logger.info(
                f"Proofreading section {section_id}: {len(questions)} questions, "
                f"avg length {round(avg_length)}, batches {sizes}"
            )

            start = 0
            for batch_number, size in enumerate(sizes, 1):
                batch = questions[start : start + size]
                start += size
                try:
                    corrections = self._proofread_batch(batch, batch_number, spent)
                    applied, skipped = self._apply_corrections(by_id, corrections)
                    self.db.commit()
                except RetryExhaustedException as e:
                    self._stop_run(record, section_id, batch_number, len(sizes), str(e.last_error))
                    break
                except Exception as e:
                    # Unexpected errors end the run like exhausted retries; earlier batches stay applied
                    logger.exception(f"Proofreading batch {batch_number} raised unexpectedly")
                    self._stop_run(
                        record, section_id, batch_number, len(sizes), f"{type(e).__name__}: {e}"
                    )
                    break

                record.corrections_applied.extend(
                    qid for qid in applied if qid not in record.corrections_applied
                )
                record.skipped_correction_ids.extend(skipped)
                record.batches_processed += 1
                record.questions_checked += len(batch)

        record.issues_found = len(record.corrections_applied)
        record.completed_at = datetime.now(timezone.utc)
        total_usage = sum(spent, TokenUsage())
        cost = calculate_cost(total_usage, self.model)
        record.total_tokens_used = total_usage.total_tokens
        record.total_cost_usd = cost.total_cost_usd
        record.total_cost_inr = cost.total_cost_inr

        metadata = dict(section.batch_metadata or {})
        metadata["proofreading"] = record.model_dump(mode="json")
        section.batch_metadata = metadata
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Could not store proofreading record for section {section_id}")
            record.status = "failed"
            record.error = record.error or f"Could not store run record: {type(e).__name__}"

        if spent:
            self.usage.log_usage(
                institute_id=institute_id,
                paper_id=paper_id,
                section_id=section_id,
                operation_type="proofread",
                model=self.model,
                usage=total_usage,
            )

        logger.info(
            f"Proofreading section {section_id} {record.status}: "
            f"{record.batches_processed}/{record.batches_planned} batches, "
            f"{record.issues_found} corrections, {len(record.skipped_correction_ids)} skipped"
        )
        return record

    def _proofread_batch(
        self, batch: List[Question], batch_number: int, spent: List[TokenUsage]
    ) -> List[QuestionCorrection]:
        prompt = build_proofreading_prompt(to_minimal_payload(batch))

        def attempt() -> List[QuestionCorrection]:
            response = self.llm.generate(
                prompt, LLMConfig(model=self.model, temperature=0.1)
            )
            spent.append(response.usage)
            raw_corrections = extract_items(repair(response.text), "corrections")
            return _parse_corrections(raw_corrections, batch_number)

        logger.info(f"Proofreading batch {batch_number}: checking {len(batch)} questions")
        return retry_call(
            attempt,
            max_attempts=settings.proofread_max_retries + 1,
            delay_sec=settings.proofread_retry_delay_sec,
            retry_on=(LLMProviderException, UnrecoverableParseError),
            label=f"Proofreading batch {batch_number}",
        )

    def _stop_run(
        self,
        record: ProofreadingRunRecord,
        section_id: str,
        batch_number: int,
        batch_count: int,
        error: str,
    ) -> None:
        self.db.rollback()
        record.status = "failed"
        record.error = f"Batch {batch_number} failed: {error}"
        logger.error(
            f"Proofreading section {section_id} stopped at batch "
            f"{batch_number}/{batch_count}: {error}"
        )

    def _apply_corrections(
        self, by_id: Dict[str, Question], corrections: List[QuestionCorrection]
    ) -> Tuple[List[str], List[str]]:
        """Apply corrections in place; returns (applied ids, skipped ids)."""
        applied: List[str] = []
        skipped: List[str] = []
        for correction in corrections:
            question = by_id.get(correction.questionId)
            if question is None:
                logger.warning(
                    f"Correction for unknown question {correction.questionId}, skipping"
                )
                skipped.append(correction.questionId)
                continue

            options = normalize_options(correction.corrected.options)
            answer = normalize_answer(correction.corrected.correctAnswer, options)
            if answer not in options:
                logger.warning(
                    f"Correction for question {question.id} marks {answer!r}, "
                    f"which is not one of its options; skipping"
                )
                skipped.append(correction.questionId)
                continue

            logger.info(f"Correcting question {question.id}: {correction.issue}")
            question.question_text = correction.corrected.question
            question.options = options
            question.correct_answer = answer
            question.explanation = correction.corrected.explanation
            if question.id not in applied:
                applied.append(question.id)
        return applied, skipped


def _parse_corrections(raw_corrections: List[object], batch_number: int) -> List[QuestionCorrection]:
    corrections = []
    for item in raw_corrections:
        try:
            corrections.append(QuestionCorrection.model_validate(item))
        except ValidationError as e:
            logger.warning(
                f"Proofreading batch {batch_number}: dropping malformed correction "
                f"({e.error_count()} errors)"
            )
    logger.info(f"Proofreading batch {batch_number}: {len(corrections)} issues flagged")
    return corrections
