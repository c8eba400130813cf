"""Paper and section state machine.

Section lifecycle::

    pending --assign chapters--> ready --generate + proofread--> in_review --finalize--> finalized

Reassigning chapters from ``in_review`` or ``finalized`` deletes the section's
questions and returns it to ``ready``. A finalized paper accepts no changes.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from paperforge.db.models import Paper, Question, Section, SectionChapter
from paperforge.exceptions import (
    NotFoundException,
    StateTransitionException,
    ValidationException,
)
from paperforge.models.paper_models import (
    ChapterAssignment,
    GenerateSectionResponse,
    PaperCreate,
)
from paperforge.models.proofreading_models import ProofreadingRunRecord
from paperforge.services.generation_service import GenerationResult, QuestionGenerator
from paperforge.services.llm_client import LLMClient
from paperforge.services.proofreading_service import ProofreadingService
from paperforge.services.section_rules import (
    EDITABLE_STATUSES,
    count_selected,
    derive_paper_status,
    require_paper_not_finalized,
    require_section_status,
    validate_paper_counts,
    validate_section_question_count,
)

logger = logging.getLogger(__name__)


class PaperService:
    """Service for creating papers and moving sections through their lifecycle."""

    def __init__(self, db: Session, llm_client: Optional[LLMClient] = None):
        """
        Initialize paper service.

        Args:
            db: Database session
            llm_client: LLM client shared by generation and proofreading
        """
        self.db = db
        self._llm_client = llm_client

    @property
    def llm(self) -> LLMClient:
        if self._llm_client is None:
            self._llm_client = LLMClient()
        return self._llm_client

    # Reads

    def get_paper(self, paper_id: str) -> Paper:
        """
        Get a paper by ID.

        Raises:
            NotFoundException: If paper not found
        """
        paper = self.db.query(Paper).filter(Paper.id == paper_id).first()
        if not paper:
            raise NotFoundException(f"Paper with ID {paper_id} not found")
        return paper

    def get_section(self, section_id: str) -> Section:
        """
        Get a section by ID.

        Raises:
            NotFoundException: If section not found
        """
        section = self.db.query(Section).filter(Section.id == section_id).first()
        if not section:
            raise NotFoundException(f"Section with ID {section_id} not found")
        return section

    def get_question(self, question_id: str) -> Question:
        question = self.db.query(Question).filter(Question.id == question_id).first()
        if not question:
            raise NotFoundException(f"Question with ID {question_id} not found")
        return question

    def list_section_questions(
        self, section_id: str, selected_only: bool = False
    ) -> List[Question]:
        self.get_section(section_id)
        query = self.db.query(Question).filter(Question.section_id == section_id)
        if selected_only:
            query = query.filter(Question.is_selected.is_(True))
        return query.order_by(Question.question_order).all()

    def derive_paper_status(self, paper_id: str) -> str:
        return derive_paper_status(self.get_paper(paper_id))

    # Paper creation

    def create_paper(self, data: PaperCreate) -> Paper:
        """
        Create a paper with its sections, all pending.

        Template-based papers get one section per template section; legacy
        papers get a single section for their subject.

        Raises:
            ValidationException: If section counts are out of range
        """
        if data.paper_template_id:
            layouts = [
                (item.subject, item.section_name or item.subject, item.question_count,
                 item.marks_per_question, item.negative_marks)
                for item in data.sections
            ]
        else:
            layouts = [
                (data.subject, data.subject, data.question_count,
                 data.marks_per_question, data.negative_marks)
            ]
        total = validate_paper_counts([layout[2] for layout in layouts])

        paper = Paper(
            id=f"paper_{uuid.uuid4().hex[:12]}",
            institute_id=data.institute_id,
            title=data.title,
            paper_template_id=data.paper_template_id,
            question_count=total,
            difficulty_level=data.difficulty_level,
            status="draft",
        )
        for order, (subject, name, count, marks, negative) in enumerate(layouts, 1):
            paper.sections.append(
                Section(
                    id=f"sec_{uuid.uuid4().hex[:12]}",
                    subject=subject,
                    section_name=name,
                    section_order=order,
                    question_count=count,
                    marks_per_question=marks,
                    negative_marks=negative,
                    status="pending",
                    batch_metadata={},
                )
            )
        self.db.add(paper)
        self.db.commit()
        self.db.refresh(paper)
        logger.info(
            f"Created paper {paper.id} with {len(layouts)} sections ({total} questions)"
        )
        return paper

    # Section transitions

    def assign_chapters(self, section_id: str, chapters: List[ChapterAssignment]) -> Section:
        """
        Replace a section's chapters and mark it ready.

        If the section already had questions (``in_review`` or ``finalized``),
        they are all deleted since they came from the old chapters.

        Raises:
            ValidationException: If no chapters are given
            StateTransitionException: If the paper is finalized
        """
        section = self.get_section(section_id)
        require_paper_not_finalized(section.paper, "assign chapters")

        unique: List[ChapterAssignment] = []
        seen = set()
        for chapter in chapters:
            if chapter.chapter_id not in seen:
                seen.add(chapter.chapter_id)
                unique.append(chapter)
        if not unique:
            raise ValidationException(
                "At least one chapter must be assigned", details={"section_id": section_id}
            )

        previous_status = section.status
        if previous_status in ("in_review", "finalized"):
            removed = len(section.questions)
            section.questions.clear()
            section.finalized_at = None
            section.batch_metadata = {}
            logger.warning(
                f"Reassigning chapters of {previous_status} section {section_id}: "
                f"deleted {removed} questions"
            )

        section.chapters.clear()
        # Old rows must be gone before re-inserting the same chapter IDs
        self.db.flush()
        for position, chapter in enumerate(unique):
            section.chapters.append(
                SectionChapter(
                    chapter_id=chapter.chapter_id,
                    chapter_name=chapter.chapter_name,
                    position=position,
                )
            )
        section.status = "ready"
        section.chapters_assigned_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(section)
        logger.info(
            f"Assigned {len(unique)} chapters to section {section_id} "
            f"({previous_status} -> ready)"
        )
        return section

    def update_section_question_count(self, section_id: str, question_count: int) -> Section:
        """
        Change a section's target count before generation.

        Raises:
            StateTransitionException: If the section is past ``ready``
            ValidationException: If the count breaks the per-section or paper limits
        """
        section = self.get_section(section_id)
        paper = section.paper
        require_paper_not_finalized(paper, "edit section")
        require_section_status(section, EDITABLE_STATUSES, "edit section")

        new_total = validate_section_question_count(section_id, question_count, paper.sections)
        section.question_count = question_count
        paper.question_count = new_total
        self.db.commit()
        self.db.refresh(section)
        return section

    def generate_section(
        self,
        section_id: str,
        difficulty: Optional[str] = None,
        source_documents: Optional[List[str]] = None,
    ) -> GenerateSectionResponse:
        """
        Generate, persist and proofread a section's questions, then move it to review.

        A section already in review is regenerated: its questions are replaced
        once the new set has been generated. If generation fails nothing is
        written and the section keeps its status.

        Raises:
            StateTransitionException: If the section is not ready or has no chapters
            GenerationException: If the generator gives up
        """
        section = self.get_section(section_id)
        paper = section.paper
        require_paper_not_finalized(paper, "generate questions")
        require_section_status(section, ("ready", "in_review"), "generate questions")
        if not section.chapters:
            raise StateTransitionException(
                "Cannot generate questions: no chapters assigned",
                details={"section_id": section_id},
            )

        difficulty = difficulty or paper.difficulty_level
        generator = QuestionGenerator(self.db, llm_client=self.llm)
        result = generator.generate_for_section(section, difficulty, source_documents)

        self._replace_questions(section, result)
        proofreading = ProofreadingService(self.db, llm_client=self.llm).run(section_id)

        self.db.refresh(section)
        section.status = "in_review"
        self.db.commit()
        logger.info(
            f"Section {section_id} in review with {len(result.questions)} questions "
            f"(proofreading {proofreading.status})"
        )
        return GenerateSectionResponse(
            section_id=section_id,
            status=section.status,
            target_count=result.target_count,
            questions_generated=len(result.questions),
            generation_calls=result.calls,
            tokens_used=result.token_usage.total_tokens,
            proofreading=proofreading,
        )

    def _replace_questions(self, section: Section, result: GenerationResult) -> None:
        attempt_id = f"gen_{uuid.uuid4().hex[:12]}"
        replaced = len(section.questions)
        section.questions.clear()
        self.db.flush()

        for order, generated in enumerate(result.questions, 1):
            section.questions.append(
                Question(
                    id=f"q_{uuid.uuid4().hex[:12]}",
                    paper_id=section.paper_id,
                    chapter_id=generated.chapter_id,
                    question_text=generated.question_text,
                    options=generated.options,
                    correct_answer=generated.correct_answer,
                    explanation=generated.explanation,
                    question_metadata=generated.metadata.model_dump(mode="json"),
                    marks=section.marks_per_question,
                    negative_marks=section.negative_marks,
                    is_selected=False,
                    question_order=order,
                    generation_attempt_id=attempt_id,
                )
            )

        metadata = dict(section.batch_metadata or {})
        metadata.pop("proofreading", None)
        metadata["generation"] = {
            "attempt_id": attempt_id,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "target_count": result.target_count,
            "questions_generated": len(result.questions),
            "calls": result.calls,
            "tokens_used": result.token_usage.total_tokens,
            "replaced_questions": replaced,
        }
        section.batch_metadata = metadata
        self.db.commit()

    def proofread_section(self, section_id: str) -> ProofreadingRunRecord:
        """
        Re-run the proofreading pass on a section under review.

        Raises:
            StateTransitionException: If the section is not in review
        """
        section = self.get_section(section_id)
        require_paper_not_finalized(section.paper, "proofread")
        require_section_status(section, ("in_review",), "proofread")
        return ProofreadingService(self.db, llm_client=self.llm).run(section_id)

    def set_question_selection(self, question_id: str, selected: bool) -> Question:
        """
        Select or deselect a question for the final paper.

        Raises:
            StateTransitionException: If the question's section is not in review
        """
        question = self.get_question(question_id)
        require_section_status(question.section, ("in_review",), "change selection")
        question.is_selected = selected
        self.db.commit()
        self.db.refresh(question)
        return question

    def regenerate_question(
        self, question_id: str, instruction: str, difficulty: Optional[str] = None
    ) -> Question:
        """
        Rewrite one question in place from a reviewer's instruction.

        The question keeps its ID, position and selection; its text, options,
        answer, explanation and metadata are replaced.

        Raises:
            ValidationException: If the instruction is blank
            StateTransitionException: If the question's section is not in review
            GenerationException: If the model gives up
        """
        if not instruction or not instruction.strip():
            raise ValidationException(
                "Instruction is required", details={"question_id": question_id}
            )
        question = self.get_question(question_id)
        section = question.section
        require_paper_not_finalized(section.paper, "regenerate question")
        require_section_status(section, ("in_review",), "regenerate question")

        generator = QuestionGenerator(self.db, llm_client=self.llm)
        replacement, _ = generator.regenerate_question(
            question, instruction, difficulty or section.paper.difficulty_level
        )

        question.question_text = replacement.question_text
        question.options = replacement.options
        question.correct_answer = replacement.correct_answer
        question.explanation = replacement.explanation
        question.question_metadata = replacement.metadata.model_dump(mode="json")
        self.db.commit()
        self.db.refresh(question)
        logger.info(f"Regenerated question {question_id} in section {section.id}")
        return question

    def finalize_section(self, section_id: str) -> Section:
        """
        Lock a reviewed section.

        Raises:
            StateTransitionException: If the section is not in review or too few
                questions are selected
        """
        section = self.get_section(section_id)
        require_paper_not_finalized(section.paper, "finalize section")
        require_section_status(section, ("in_review",), "finalize section")

        selected = sum(1 for question in section.questions if question.is_selected)
        if selected < section.question_count:
            raise StateTransitionException(
                f"Cannot finalize section: {selected} questions selected, "
                f"{section.question_count} required",
                details={
                    "section_id": section_id,
                    "selected": selected,
                    "required": section.question_count,
                },
            )

        section.status = "finalized"
        section.finalized_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(section)
        logger.info(f"Finalized section {section_id} with {selected} selected questions")
        return section

    def finalize_paper(self, paper_id: str) -> Paper:
        """
        Finalize a paper. All or nothing.

        Template-based papers need every section finalized; legacy papers need
        the selected count to equal the target count.

        Raises:
            StateTransitionException: Naming the unfinalized sections or both counts
        """
        paper = self.get_paper(paper_id)
        require_paper_not_finalized(paper, "finalize paper")

        if paper.is_templated:
            pending = [section for section in paper.sections if section.status != "finalized"]
            if pending:
                names = ", ".join(f"{s.section_name} ({s.status})" for s in pending)
                raise StateTransitionException(
                    f"Cannot finalize paper: sections not finalized: {names}",
                    details={
                        "paper_id": paper_id,
                        "unfinalized_sections": [
                            {"id": s.id, "section_name": s.section_name, "status": s.status}
                            for s in pending
                        ],
                    },
                )
        else:
            selected = count_selected(paper)
            if selected != paper.question_count:
                raise StateTransitionException(
                    f"Cannot finalize paper: {selected} questions selected, "
                    f"target is {paper.question_count}",
                    details={
                        "paper_id": paper_id,
                        "selected": selected,
                        "target": paper.question_count,
                    },
                )

        now = datetime.now(timezone.utc)
        paper.status = "finalized"
        paper.finalized_at = now
        for section in paper.sections:
            if section.status != "finalized":
                section.status = "finalized"
                section.finalized_at = now
        self.db.commit()
        self.db.refresh(paper)
        logger.info(f"Finalized paper {paper_id}")
        return paper
