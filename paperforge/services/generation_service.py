"""Question generation service: produces a section's candidate questions with the LLM."""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from paperforge.config import settings
from paperforge.db.models import ChapterKnowledge, Question, Section, SectionChapter
from paperforge.exceptions import (
    GenerationException,
    LLMProviderException,
    RetryExhaustedException,
    UnrecoverableParseError,
    ValidationException,
)
from paperforge.models.question_models import QUESTION_FORMS, GeneratedQuestion
from paperforge.models.usage_models import TokenUsage
from paperforge.services.knowledge_service import (
    ChapterKnowledgeService,
    load_scope,
    load_style,
)
from paperforge.services.llm_client import LLMClient, LLMConfig
from paperforge.services.usage_service import UsageService
from paperforge.utils.json_repair import extract_items, repair
from paperforge.utils.question_format import (
    camel_to_snake,
    normalize_answer,
    normalize_options,
    pick,
)
from paperforge.utils.retry import retry_call

logger = logging.getLogger(__name__)

# Previously generated stems shown to the model so it avoids repeats
DEDUP_HINT_LIMIT = 30
DEDUP_STEM_CHARS = 120
SOURCE_EXCERPT_CHARS = 4000
STYLE_EXAMPLE_LIMIT = 5

PROHIBITIONS = [
    'NEVER use "Always" or "Never" in question stems',
    "NEVER use double negatives",
    'NEVER include "None of the above" or "All of the above"',
    "NEVER create subset inclusion (Option A contained in Option B)",
    "NEVER place more than 2 consecutive high-density questions",
    "NEVER create lopsided visual weight (1 long + 3 short options)",
    "NEVER use ambiguous pronouns without clear referents",
    "NEVER create non-mutually exclusive options",
    "NEVER create Match questions without a 4x4 matrix and coded options",
    "NEVER let the same answer key appear more than 3 times in a row",
]

# structuralForm labels the model may use, mapped to stored metadata forms
_FORM_ALIASES = {
    "standard_mcq": "standard",
    "standard": "standard",
    "negative_phrasing": "standard",
    "assertion_reason": "assertion_reason",
    "match_following": "match_following",
    "match_the_following": "match_following",
    "multi_statement": "statement_based",
    "statement_based": "statement_based",
}

_ARCHETYPES = {
    "direct_recall",
    "direct_application",
    "integrative",
    "discriminator",
    "exception_outlier",
}

SYSTEM_PROMPT = """You are an experienced exam setter writing single-correct multiple choice questions.
Every question has exactly four options labelled A to D and one correct answer.
Respond with JSON only."""


@dataclass
class DifficultyConfig:
    """Question mix for a difficulty level."""

    difficulty: str
    archetype_distribution: Dict[str, float]
    structural_forms: Dict[str, float]
    cognitive_load: Dict[str, float]
    warmup_count: int
    max_consecutive_high: int = 2
    prohibitions: List[str] = field(default_factory=lambda: list(PROHIBITIONS))


def map_difficulty(difficulty: str, question_count: int) -> DifficultyConfig:
    """
    Map a difficulty level to the archetype, form and cognitive load mix.

    Args:
        difficulty: "easy", "balanced" or "hard"
        question_count: Number of questions in the batch, used for warm-up size

    Raises:
        ValidationException: If the difficulty level is unknown
    """
    archetypes = {
        "direct_recall": 0.60,
        "direct_application": 0.12,
        "integrative": 0.10,
        "discriminator": 0.08,
        "exception_outlier": 0.10,
    }
    cognitive_load = {"low": 0.40, "medium": 0.45, "high": 0.15}

    if difficulty == "easy":
        archetypes = {
            "direct_recall": 0.65,
            "direct_application": 0.14,
            "integrative": 0.08,
            "discriminator": 0.06,
            "exception_outlier": 0.07,
        }
        cognitive_load = {"low": 0.40, "medium": 0.49, "high": 0.11}
    elif difficulty == "hard":
        archetypes = {
            "direct_recall": 0.58,
            "direct_application": 0.10,
            "integrative": 0.12,
            "discriminator": 0.12,
            "exception_outlier": 0.08,
        }
        cognitive_load = {"low": 0.40, "medium": 0.44, "high": 0.16}
    elif difficulty != "balanced":
        raise ValidationException(f"Unknown difficulty level: {difficulty}")

    return DifficultyConfig(
        difficulty=difficulty,
        archetype_distribution=archetypes,
        structural_forms={
            "standard_mcq": 0.50,
            "match_following": 0.20,
            "assertion_reason": 0.08,
            "negative_phrasing": 0.12,
            "multi_statement": 0.10,
        },
        cognitive_load=cognitive_load,
        warmup_count=min(3, math.floor(question_count * 0.1)),
    )


def distribute_evenly(total: int, parts: int) -> List[int]:
    """Split ``total`` into ``parts`` counts that differ by at most one."""
    if parts <= 0:
        return []
    base, remainder = divmod(total, parts)
    return [base + 1 if index < remainder else base for index in range(parts)]


def split_into_calls(count: int, batch_size: int) -> List[int]:
    """Split one chapter's share into LLM calls of at most ``batch_size`` questions."""
    if count <= 0:
        return []
    return distribute_evenly(count, math.ceil(count / batch_size))


@dataclass
class GenerationResult:
    """Questions produced for a section, not yet persisted."""

    questions: List[GeneratedQuestion]
    token_usage: TokenUsage
    calls: int
    target_count: int


class QuestionGenerator:
    """Service for generating a section's questions."""

    def __init__(self, db: Session, llm_client: Optional[LLMClient] = None):
        """
        Initialize question generator.

        Args:
            db: Database session
            llm_client: LLM client instance
        """
        self.db = db
        self.llm = llm_client or LLMClient()
        self.knowledge = ChapterKnowledgeService(db)
        self.usage = UsageService(db)
        self.model = settings.generation_model

    def generate_for_section(
        self,
        section: Section,
        difficulty: str,
        source_documents: Optional[List[str]] = None,
    ) -> GenerationResult:
        """
        Generate over-provisioned candidate questions for a section.

        The target is the section's count times the over-generation factor,
        spread evenly over the assigned chapters. Nothing is written to the
        question table; the caller persists the result.

        Args:
            section: Section with chapters assigned
            difficulty: "easy", "balanced" or "hard"
            source_documents: Optional extra source text for the prompts

        Returns:
            GenerationResult with the questions and token usage

        Raises:
            GenerationException: If a chapter's call keeps failing
        """
        chapters: List[SectionChapter] = list(section.chapters)
        if not chapters:
            raise GenerationException(
                f"Section {section.id} has no chapters assigned",
                details={"section_id": section.id},
            )

        target = math.ceil(section.question_count * settings.over_generation_factor)
        institute_id = section.paper.institute_id
        per_chapter = distribute_evenly(target, len(chapters))
        logger.info(
            f"Generating {target} questions for section {section.id} "
            f"across {len(chapters)} chapters ({difficulty})"
        )

        generated: List[GeneratedQuestion] = []
        # One entry per LLM call, failed attempts included
        spent: List[TokenUsage] = []

        try:
            for chapter, chapter_target in zip(chapters, per_chapter):
                knowledge = self._completed_knowledge(chapter.chapter_id, institute_id)
                for batch_count in split_into_calls(chapter_target, settings.generation_batch_size):
                    generated.extend(
                        self._generate_batch(
                            section, chapter, knowledge, batch_count, difficulty,
                            source_documents or [], generated, spent,
                        )
                    )
        finally:
            if spent:
                self.usage.log_usage(
                    institute_id=institute_id,
                    paper_id=section.paper_id,
                    section_id=section.id,
                    operation_type="generate",
                    model=self.model,
                    usage=sum(spent, TokenUsage()),
                    questions_generated=len(generated),
                )

        total_usage = sum(spent, TokenUsage())
        logger.info(
            f"Generated {len(generated)}/{target} questions for section {section.id} "
            f"in {len(spent)} calls ({total_usage.total_tokens} tokens)"
        )
        return GenerationResult(
            questions=generated,
            token_usage=total_usage,
            calls=len(spent),
            target_count=target,
        )

    def _completed_knowledge(self, chapter_id: str, institute_id: str) -> Optional[ChapterKnowledge]:
        record = self.knowledge.fetch(chapter_id, institute_id)
        if record is None or record.status != "completed":
            return None
        return record

    def _generate_batch(
        self,
        section: Section,
        chapter: SectionChapter,
        knowledge: Optional[ChapterKnowledge],
        count: int,
        difficulty: str,
        source_documents: List[str],
        previous: List[GeneratedQuestion],
        spent: List[TokenUsage],
    ) -> List[GeneratedQuestion]:
        prompt = build_generation_prompt(
            subject=section.subject,
            chapter_name=chapter.chapter_name or chapter.chapter_id,
            count=count,
            config=map_difficulty(difficulty, count),
            knowledge=knowledge,
            source_documents=source_documents,
            previous_stems=[q.question_text for q in previous],
        )

        def attempt() -> List[GeneratedQuestion]:
            response = self.llm.generate(
                prompt, LLMConfig(model=self.model, system_prompt=SYSTEM_PROMPT)
            )
            spent.append(response.usage)
            items = extract_items(repair(response.text), "questions")
            questions = parse_generated_items(items, chapter.chapter_id, difficulty)
            if not questions:
                raise GenerationException(
                    f"Model returned no usable questions for chapter {chapter.chapter_id}"
                )
            return questions

        try:
            questions = retry_call(
                attempt,
                max_attempts=settings.generation_max_retries + 1,
                delay_sec=settings.generation_retry_delay_sec,
                backoff=2.0,
                retry_on=(LLMProviderException, UnrecoverableParseError, GenerationException),
                label=f"Generation for chapter {chapter.chapter_id}",
            )
        except RetryExhaustedException as e:
            raise GenerationException(
                f"Question generation failed for chapter {chapter.chapter_id}: {e.last_error}",
                details={
                    "section_id": section.id,
                    "chapter_id": chapter.chapter_id,
                    "attempts": e.attempt_errors,
                },
            ) from e

        if len(questions) < count:
            logger.warning(
                f"Chapter {chapter.chapter_id}: asked for {count} questions, got {len(questions)}"
            )
        return questions

    def regenerate_question(
        self, question: Question, instruction: str, difficulty: str
    ) -> Tuple[GeneratedQuestion, TokenUsage]:
        """
        Rewrite one stored question following a reviewer's instruction.

        The chapter's completed knowledge, if any, is included in the prompt.
        Nothing is written to the question; the caller applies the result.

        Args:
            question: Question to rewrite
            instruction: What the reviewer wants changed
            difficulty: "easy", "balanced" or "hard"

        Returns:
            The replacement question and the tokens spent on it

        Raises:
            GenerationException: If no usable replacement comes back after retries
        """
        section = question.section
        institute_id = section.paper.institute_id
        knowledge = (
            self._completed_knowledge(question.chapter_id, institute_id)
            if question.chapter_id
            else None
        )
        prompt = build_regeneration_prompt(
            subject=section.subject,
            question=question,
            instruction=instruction,
            knowledge=knowledge,
        )
        spent: List[TokenUsage] = []

        def attempt() -> GeneratedQuestion:
            response = self.llm.generate(
                prompt, LLMConfig(model=self.model, system_prompt=SYSTEM_PROMPT)
            )
            spent.append(response.usage)
            value = repair(response.text)
            if isinstance(value, dict) and "questions" not in value:
                items = [value]
            else:
                items = extract_items(value, "questions")
            questions = parse_generated_items(items[:1], question.chapter_id, difficulty)
            if not questions:
                raise GenerationException(
                    f"Model returned no usable replacement for question {question.id}"
                )
            return questions[0]

        replacement: Optional[GeneratedQuestion] = None
        try:
            replacement = retry_call(
                attempt,
                max_attempts=settings.generation_max_retries + 1,
                delay_sec=settings.generation_retry_delay_sec,
                backoff=2.0,
                retry_on=(LLMProviderException, UnrecoverableParseError, GenerationException),
                label=f"Regeneration of question {question.id}",
            )
        except RetryExhaustedException as e:
            raise GenerationException(
                f"Question regeneration failed for {question.id}: {e.last_error}",
                details={"question_id": question.id, "attempts": e.attempt_errors},
            ) from e
        finally:
            if spent:
                self.usage.log_usage(
                    institute_id=institute_id,
                    paper_id=question.paper_id,
                    section_id=question.section_id,
                    chapter_id=question.chapter_id,
                    operation_type="regenerate",
                    model=self.model,
                    usage=sum(spent, TokenUsage()),
                    questions_generated=1 if replacement is not None else 0,
                )

        logger.info(
            f"Regenerated question {question.id} in {len(spent)} calls "
            f"({sum(u.total_tokens for u in spent)} tokens)"
        )
        return replacement, sum(spent, TokenUsage())


def build_generation_prompt(
    subject: str,
    chapter_name: str,
    count: int,
    config: DifficultyConfig,
    knowledge: Optional[ChapterKnowledge] = None,
    source_documents: Optional[List[str]] = None,
    previous_stems: Optional[List[str]] = None,
) -> str:
    """Assemble the generation prompt for one call."""
    lines = [
        f"Write {count} multiple choice questions for {subject}, chapter \"{chapter_name}\".",
        f"Difficulty: {config.difficulty}.",
        "",
        "Archetype mix: " + _format_mix(config.archetype_distribution),
        "Structural forms: " + _format_mix(config.structural_forms),
        "Cognitive load: " + _format_mix(config.cognitive_load),
        f"Start with {config.warmup_count} low-load warm-up questions and never place more "
        f"than {config.max_consecutive_high} high-load questions in a row.",
        "",
        "Rules:",
        *[f"- {rule}" for rule in config.prohibitions],
    ]

    if knowledge is not None:
        scope = load_scope(knowledge)
        if scope is not None and scope.topics:
            lines += ["", "Stay within these chapter topics:"]
            for topic in scope.topics:
                depth = scope.depth_indicators.get(topic, "basic")
                names = ", ".join(sub.name for sub in scope.subtopics.get(topic, []))
                lines.append(f"- {topic} ({depth})" + (f": {names}" if names else ""))
            if scope.terminology_mappings:
                terms = "; ".join(f"{k} -> {v}" for k, v in scope.terminology_mappings.items())
                lines.append(f"Use this terminology: {terms}")
        style = load_style(knowledge)
        if style is not None and style.questions:
            lines += ["", "Match the phrasing of these past questions:"]
            for example in style.questions[:STYLE_EXAMPLE_LIMIT]:
                lines.append(f"- {example.text}")

    for index, document in enumerate(source_documents or [], 1):
        lines += ["", f"Source document {index}:", document[:SOURCE_EXCERPT_CHARS]]

    if previous_stems:
        lines += ["", "Do not repeat these questions already written:"]
        for stem in previous_stems[-DEDUP_HINT_LIMIT:]:
            lines.append(f"- {stem[:DEDUP_STEM_CHARS]}")

    lines += [
        "",
        'Return {"questions": [...]} where each item has "questionText", "options" '
        '(object A-D), "correctAnswer" (a label), "explanation", "archetype", '
        '"structuralForm", "cognitiveLoad" and "topic".',
    ]
    return "\n".join(lines)


def build_regeneration_prompt(
    subject: str,
    question: Question,
    instruction: str,
    knowledge: Optional[ChapterKnowledge] = None,
) -> str:
    """Assemble the prompt that rewrites one question per a reviewer's instruction."""
    metadata = question.question_metadata or {}
    original = {
        "questionText": question.question_text,
        "options": question.options,
        "correctAnswer": question.correct_answer,
        "explanation": question.explanation,
        "archetype": metadata.get("archetype"),
        "structuralForm": metadata.get("form", "standard"),
    }
    lines = [
        f"Rewrite this {subject} multiple choice question following the reviewer's instruction.",
        "",
        "Original question:",
        json.dumps(original, indent=2, ensure_ascii=False),
        "",
        "Reviewer instruction:",
        instruction.strip(),
        "",
        "Keep the same structural form unless the instruction asks for a change.",
        "Rules:",
        *[f"- {rule}" for rule in PROHIBITIONS],
    ]

    if knowledge is not None:
        scope = load_scope(knowledge)
        if scope is not None and scope.topics:
            lines += ["", "Stay within these chapter topics: " + ", ".join(scope.topics)]

    lines += [
        "",
        'Return one JSON object with "questionText", "options" (object A-D), '
        '"correctAnswer" (a label), "explanation", "archetype", "structuralForm", '
        '"cognitiveLoad" and "topic".',
    ]
    return "\n".join(lines)


def _format_mix(mix: Dict[str, float]) -> str:
    return ", ".join(f"{name} {round(share * 100)}%" for name, share in mix.items())


def parse_generated_items(
    items: List[Any], chapter_id: str, difficulty: str
) -> List[GeneratedQuestion]:
    """
    Validate raw model items into GeneratedQuestion objects.

    Items missing a stem, options or a resolvable answer are dropped.
    """
    questions = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning(f"Dropping non-object question item {index}")
            continue
        options = normalize_options(pick(item, "options", default={}))
        answer = normalize_answer(
            pick(item, "correctAnswer", "correct_answer", "answer"), options
        )
        if answer not in options:
            logger.warning(f"Dropping question item {index}: answer {answer!r} is not an option")
            continue
        try:
            questions.append(
                GeneratedQuestion(
                    question_text=str(
                        pick(item, "questionText", "question_text", "question", default="")
                    ).strip(),
                    options=options,
                    correct_answer=answer,
                    explanation=pick(item, "explanation"),
                    chapter_id=chapter_id,
                    metadata=_build_metadata(item, difficulty),
                )
            )
        except ValidationError as e:
            logger.warning(f"Dropping invalid question item {index}: {e.error_count()} errors")
    return questions


def _build_metadata(item: Dict[str, Any], difficulty: str) -> Dict[str, Any]:
    raw_form = camel_to_snake(str(pick(item, "structuralForm", "structural_form", "form", default="standard")))
    form = _FORM_ALIASES.get(raw_form, "standard")
    if form not in QUESTION_FORMS:
        form = "standard"

    archetype = pick(item, "archetype")
    archetype = camel_to_snake(str(archetype)) if archetype else None
    load = str(pick(item, "cognitiveLoad", "cognitive_load", default="")).strip().lower()

    metadata: Dict[str, Any] = {
        "form": form,
        "archetype": archetype if archetype in _ARCHETYPES else None,
        "cognitive_load": load if load in ("low", "medium", "high") else None,
        "difficulty": difficulty,
        "topic": pick(item, "topic"),
    }
    if form == "standard":
        metadata["negative_phrasing"] = raw_form == "negative_phrasing"
    elif form == "assertion_reason":
        metadata["assertion"] = pick(item, "assertion")
        metadata["reason"] = pick(item, "reason")
    elif form == "match_following":
        metadata["column_a"] = _string_list(pick(item, "columnA", "column_a", "listI", default=[]))
        metadata["column_b"] = _string_list(pick(item, "columnB", "column_b", "listII", default=[]))
    elif form == "statement_based":
        metadata["statements"] = _string_list(pick(item, "statements", default=[]))
    return metadata


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [item if isinstance(item, str) else json.dumps(item) for item in value]
    return []
