"""Chapter knowledge cache with version-checked writes."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from paperforge.config import settings
from paperforge.db.models import ChapterKnowledge
from paperforge.exceptions import KnowledgeConflictException, NotFoundException
from paperforge.models.knowledge_models import (
    DEPTH_RANK,
    ScopeAnalysis,
    StyleExamples,
)

logger = logging.getLogger(__name__)


def merge_scope_analyses(
    existing: Optional[ScopeAnalysis], new: ScopeAnalysis, material_title: str
) -> ScopeAnalysis:
    """
    Merge a new scope analysis into the cached one. Scope only ever grows.

    Topics are unioned in insertion order, subtopics are unioned per topic
    and deduplicated by name, each topic keeps the deepest depth seen,
    terminology from the new analysis wins, and the material title is added
    once to ``extracted_from_materials``.

    Args:
        existing: Cached scope, or None if nothing is cached yet
        new: Scope produced from the latest material
        material_title: Title of the material ``new`` was produced from

    Returns:
        Merged scope analysis
    """
    if existing is None:
        existing = ScopeAnalysis()

    topics = list(existing.topics)
    for topic in new.topics:
        if topic not in topics:
            topics.append(topic)

    subtopics = {topic: list(items) for topic, items in existing.subtopics.items()}
    for topic, items in new.subtopics.items():
        if topic not in subtopics:
            subtopics[topic] = list(items)
            continue
        known = {item.name for item in subtopics[topic]}
        for item in items:
            if item.name not in known:
                subtopics[topic].append(item)
                known.add(item.name)

    depth_indicators = dict(existing.depth_indicators)
    for topic, depth in new.depth_indicators.items():
        current = depth_indicators.get(topic)
        if current is None or DEPTH_RANK[depth] > DEPTH_RANK[current]:
            depth_indicators[topic] = depth

    terminology = {**existing.terminology_mappings, **new.terminology_mappings}

    materials = list(existing.extracted_from_materials)
    if material_title not in materials:
        materials.append(material_title)

    return ScopeAnalysis(
        topics=topics,
        subtopics=subtopics,
        depth_indicators=depth_indicators,
        terminology_mappings=terminology,
        extracted_from_materials=materials,
        last_updated=datetime.now(timezone.utc),
    )


def merge_style_examples(
    existing: Optional[StyleExamples], new: StyleExamples, material_title: str
) -> StyleExamples:
    """
    Merge new style examples into the cached ones.

    Questions are appended without deduplication, so re-analysing the same
    material twice duplicates its examples. Material titles are deduplicated.
    """
    if existing is None:
        existing = StyleExamples()

    materials = list(existing.extracted_from_materials)
    if material_title not in materials:
        materials.append(material_title)

    return StyleExamples(
        questions=[*existing.questions, *new.questions],
        extracted_from_materials=materials,
    )


def add_material_id(existing_ids: List[str], material_id: str) -> List[str]:
    if material_id in existing_ids:
        return list(existing_ids)
    return [*existing_ids, material_id]


def remove_material_id(existing_ids: List[str], material_id: str) -> List[str]:
    return [existing for existing in existing_ids if existing != material_id]


def load_scope(record: ChapterKnowledge) -> Optional[ScopeAnalysis]:
    if not record.scope_analysis:
        return None
    return ScopeAnalysis.model_validate(record.scope_analysis)


def load_style(record: ChapterKnowledge) -> Optional[StyleExamples]:
    if not record.style_examples:
        return None
    return StyleExamples.model_validate(record.style_examples)


class ChapterKnowledgeService:
    """
    Service for reading and updating cached chapter knowledge.

    Every write re-reads the record, applies its change and commits with a
    version check. If another writer committed in between, the stale write
    is rolled back and replayed on the fresh record.
    """

    def __init__(self, db: Session):
        """
        Initialize chapter knowledge service.

        Args:
            db: Database session
        """
        self.db = db
        self.max_attempts = settings.knowledge_max_write_attempts

    def fetch(self, chapter_id: str, institute_id: str) -> Optional[ChapterKnowledge]:
        return (
            self.db.query(ChapterKnowledge)
            .filter(
                ChapterKnowledge.chapter_id == chapter_id,
                ChapterKnowledge.institute_id == institute_id,
            )
            .first()
        )

    def fetch_by_id(self, knowledge_id: str) -> ChapterKnowledge:
        """
        Get a knowledge record by ID.

        Raises:
            NotFoundException: If no record has this ID
        """
        record = self.db.query(ChapterKnowledge).filter(ChapterKnowledge.id == knowledge_id).first()
        if record is None:
            raise NotFoundException(f"Chapter knowledge with ID {knowledge_id} not found")
        return record

    def get_or_create(self, chapter_id: str, institute_id: str) -> ChapterKnowledge:
        """Return the record for a chapter, creating an empty pending one if needed."""
        return self._write(chapter_id, institute_id, lambda record: None, label="get_or_create")

    def upsert_merge(
        self,
        chapter_id: str,
        institute_id: str,
        material_id: str,
        material_title: str,
        scope: Optional[ScopeAnalysis] = None,
        style: Optional[StyleExamples] = None,
    ) -> ChapterKnowledge:
        """
        Merge a material's analysis into the chapter's cached knowledge.

        Args:
            chapter_id: Chapter the material belongs to
            institute_id: Institute that owns the material
            material_id: Material that produced the analysis
            material_title: Human readable title recorded in the merged lists
            scope: Scope analysis from the material, if any
            style: Style examples from the material, if any

        Returns:
            The updated record

        Raises:
            KnowledgeConflictException: If concurrent writers win every attempt
        """
        title = material_title or material_id

        def apply(record: ChapterKnowledge) -> None:
            if scope is not None:
                merged = merge_scope_analyses(load_scope(record), scope, title)
                record.scope_analysis = merged.model_dump(mode="json")
            if style is not None:
                merged_style = merge_style_examples(load_style(record), style, title)
                record.style_examples = merged_style.model_dump(mode="json")
            record.material_ids = add_material_id(record.material_ids or [], material_id)
            record.last_updated_by_material_id = material_id

        record = self._write(chapter_id, institute_id, apply, label="upsert_merge")
        logger.info(
            f"Merged material {material_id} into knowledge for chapter {chapter_id} "
            f"(institute {institute_id}, version {record.version})"
        )
        return record

    def mark_analyzing(
        self, chapter_id: str, institute_id: str
    ) -> Tuple[ChapterKnowledge, str]:
        """
        Start a new analysis attempt.

        Returns:
            The record and the new attempt ID, which later completion or
            failure calls must present
        """
        attempt_id = f"attempt_{uuid.uuid4().hex[:12]}"

        def apply(record: ChapterKnowledge) -> None:
            record.status = "analyzing"
            record.analysis_attempt_id = attempt_id
            record.analysis_started_at = datetime.now(timezone.utc)
            record.analysis_error = None

        record = self._write(chapter_id, institute_id, apply, label="mark_analyzing")
        return record, attempt_id

    def mark_completed(
        self, chapter_id: str, institute_id: str, attempt_id: str
    ) -> ChapterKnowledge:
        """Mark an analysis attempt completed. Ignored if a newer attempt has started."""

        def apply(record: ChapterKnowledge) -> None:
            if not self._owns_attempt(record, attempt_id, "completion"):
                return
            record.status = "completed"
            record.analysis_completed_at = datetime.now(timezone.utc)
            record.analysis_error = None

        return self._write(
            chapter_id, institute_id, apply, create_if_missing=False, label="mark_completed"
        )

    def mark_failed(
        self, chapter_id: str, institute_id: str, attempt_id: str, error: str
    ) -> ChapterKnowledge:
        """
        Mark an analysis attempt failed.

        Cached scope and style are left as they are so earlier knowledge stays
        usable. Ignored if a newer attempt has started.
        """

        def apply(record: ChapterKnowledge) -> None:
            if not self._owns_attempt(record, attempt_id, "failure"):
                return
            record.status = "failed"
            record.analysis_error = error

        return self._write(
            chapter_id, institute_id, apply, create_if_missing=False, label="mark_failed"
        )

    def remove_material(
        self, chapter_id: str, institute_id: str, material_id: str
    ) -> ChapterKnowledge:
        """
        Forget a deleted material's ID. Knowledge learned from it is kept.

        Raises:
            NotFoundException: If the chapter has no knowledge record
        """

        def apply(record: ChapterKnowledge) -> None:
            current = record.material_ids or []
            if material_id in current:
                record.material_ids = remove_material_id(current, material_id)

        return self._write(
            chapter_id, institute_id, apply, create_if_missing=False, label="remove_material"
        )

    def _owns_attempt(self, record: ChapterKnowledge, attempt_id: str, action: str) -> bool:
        if record.analysis_attempt_id == attempt_id:
            return True
        logger.warning(
            f"Ignoring {action} of analysis {attempt_id} for chapter {record.chapter_id}: "
            f"attempt {record.analysis_attempt_id} superseded it"
        )
        return False

    def _write(
        self,
        chapter_id: str,
        institute_id: str,
        apply: Callable[[ChapterKnowledge], None],
        create_if_missing: bool = True,
        label: str = "write",
    ) -> ChapterKnowledge:
        for attempt in range(1, self.max_attempts + 1):
            record = self.fetch(chapter_id, institute_id)
            if record is None:
                if not create_if_missing:
                    raise NotFoundException(
                        f"No knowledge for chapter {chapter_id} at institute {institute_id}"
                    )
                record = ChapterKnowledge(
                    id=f"ck_{uuid.uuid4().hex[:12]}",
                    chapter_id=chapter_id,
                    institute_id=institute_id,
                    status="pending",
                    material_ids=[],
                )
                self.db.add(record)

            apply(record)
            try:
                self.db.commit()
            except (StaleDataError, IntegrityError) as e:
                # Another writer updated the row, or inserted it first
                self.db.rollback()
                logger.warning(
                    f"Knowledge {label} for chapter {chapter_id} lost a race "
                    f"(attempt {attempt}/{self.max_attempts}): {type(e).__name__}"
                )
                continue

            self.db.refresh(record)
            return record

        raise KnowledgeConflictException(
            f"Could not update knowledge for chapter {chapter_id} after "
            f"{self.max_attempts} attempts",
            details={"chapter_id": chapter_id, "institute_id": institute_id},
        )
