"""Tests for the chapter knowledge cache."""

import pytest
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from paperforge.db.database import SessionLocal
from paperforge.db.models import ChapterKnowledge
from paperforge.exceptions import KnowledgeConflictException, NotFoundException
from paperforge.models.knowledge_models import (
    ExtractedQuestion,
    ScopeAnalysis,
    StyleExamples,
    Subtopic,
)
from paperforge.services import knowledge_service
from paperforge.services.knowledge_service import (
    ChapterKnowledgeService,
    add_material_id,
    load_scope,
    load_style,
    merge_scope_analyses,
    merge_style_examples,
    remove_material_id,
)

CHAPTER = "ch_cell"
INSTITUTE = "inst_01"


def scope(topics, depths=None, subtopics=None, terms=None):
    return ScopeAnalysis(
        topics=topics,
        depth_indicators=depths or {},
        subtopics=subtopics or {},
        terminology_mappings=terms or {},
    )


def style(*texts):
    return StyleExamples(questions=[ExtractedQuestion(text=text, answer="A") for text in texts])


@pytest.fixture
def knowledge_service_instance(db_session: Session):
    """Create a chapter knowledge service instance."""
    return ChapterKnowledgeService(db_session)


class TestMergeScope:
    """Pure scope merge rules."""

    def test_merge_into_nothing(self):
        merged = merge_scope_analyses(None, scope(["Cells"], {"Cells": "basic"}), "Notes")
        assert merged.topics == ["Cells"]
        assert merged.depth_indicators == {"Cells": "basic"}
        assert merged.extracted_from_materials == ["Notes"]

    def test_topics_union_in_insertion_order(self):
        merged = merge_scope_analyses(
            scope(["Cells", "Tissues"]), scope(["Tissues", "Organs"]), "Notes"
        )
        assert merged.topics == ["Cells", "Tissues", "Organs"]

    def test_merge_is_idempotent_on_topic_set(self):
        first = scope(["Cells", "Tissues"])
        once = merge_scope_analyses(first, scope(["Tissues"]), "Notes")
        twice = merge_scope_analyses(once, scope(["Tissues"]), "Notes")
        assert set(twice.topics) == {"Cells", "Tissues"}
        assert len(twice.topics) == 2

    def test_depth_never_decreases(self):
        existing = scope(["Cells", "Tissues"], {"Cells": "advanced", "Tissues": "basic"})
        new = scope(["Cells", "Tissues"], {"Cells": "basic", "Tissues": "intermediate"})

        merged = merge_scope_analyses(existing, new, "Notes")

        assert merged.depth_indicators == {"Cells": "advanced", "Tissues": "intermediate"}

    def test_new_topic_depth_is_added_even_when_basic(self):
        merged = merge_scope_analyses(
            scope(["Cells"], {"Cells": "intermediate"}),
            scope(["Organs"], {"Organs": "basic"}),
            "Notes",
        )
        assert merged.depth_indicators["Organs"] == "basic"

    def test_subtopics_deduplicated_by_name(self):
        existing = scope(
            ["Cells"], subtopics={"Cells": [Subtopic(name="Membrane", detail="old")]}
        )
        new = scope(
            ["Cells", "Organs"],
            subtopics={
                "Cells": [Subtopic(name="Membrane", detail="new"), Subtopic(name="Nucleus")],
                "Organs": [Subtopic(name="Heart")],
            },
        )

        merged = merge_scope_analyses(existing, new, "Notes")

        assert [s.name for s in merged.subtopics["Cells"]] == ["Membrane", "Nucleus"]
        assert merged.subtopics["Cells"][0].detail == "old"
        assert [s.name for s in merged.subtopics["Organs"]] == ["Heart"]

    def test_terminology_new_wins(self):
        merged = merge_scope_analyses(
            scope(["Cells"], terms={"ATP": "energy currency", "ER": "reticulum"}),
            scope(["Cells"], terms={"ATP": "adenosine triphosphate"}),
            "Notes",
        )
        assert merged.terminology_mappings == {
            "ATP": "adenosine triphosphate",
            "ER": "reticulum",
        }

    def test_material_titles_recorded_once(self):
        existing = scope(["Cells"])
        existing.extracted_from_materials = ["Notes"]
        merged = merge_scope_analyses(existing, scope(["Cells"]), "Notes")
        merged = merge_scope_analyses(merged, scope(["Cells"]), "Slides")
        assert merged.extracted_from_materials == ["Notes", "Slides"]
        assert merged.last_updated is not None


class TestMergeStyle:
    """Pure style merge rules."""

    def test_style_examples_appended(self):
        merged = merge_style_examples(style("Q1"), style("Q2", "Q3"), "Paper 2023")
        assert [q.text for q in merged.questions] == ["Q1", "Q2", "Q3"]
        assert merged.extracted_from_materials == ["Paper 2023"]

    def test_style_examples_not_deduplicated(self):
        merged = merge_style_examples(style("Q1"), style("Q1"), "Paper 2023")
        assert [q.text for q in merged.questions] == ["Q1", "Q1"]


def test_material_id_helpers():
    """Test material ID add and remove."""
    assert add_material_id(["m1"], "m2") == ["m1", "m2"]
    assert add_material_id(["m1"], "m1") == ["m1"]
    assert remove_material_id(["m1", "m2"], "m1") == ["m2"]
    assert remove_material_id(["m1"], "missing") == ["m1"]


def test_upsert_merge_creates_record(knowledge_service_instance):
    """Test the first merge creates the record."""
    record = knowledge_service_instance.upsert_merge(
        CHAPTER, INSTITUTE, "mat_1", "Notes", scope=scope(["Cells"], {"Cells": "basic"})
    )

    assert record.id.startswith("ck_")
    assert record.status == "pending"
    assert record.material_ids == ["mat_1"]
    assert record.last_updated_by_material_id == "mat_1"
    assert load_scope(record).topics == ["Cells"]
    assert load_style(record) is None
    assert record.version == 1


def test_upsert_merge_accumulates(knowledge_service_instance):
    """Test successive merges grow scope and bump the version."""
    knowledge_service_instance.upsert_merge(
        CHAPTER, INSTITUTE, "mat_1", "Notes", scope=scope(["Cells"], {"Cells": "basic"})
    )
    record = knowledge_service_instance.upsert_merge(
        CHAPTER, INSTITUTE, "mat_2", "Slides",
        scope=scope(["Cells", "Organs"], {"Cells": "advanced"}),
        style=style("Which organelle makes ATP?"),
    )

    merged = load_scope(record)
    assert merged.topics == ["Cells", "Organs"]
    assert merged.depth_indicators["Cells"] == "advanced"
    assert merged.extracted_from_materials == ["Notes", "Slides"]
    assert [q.text for q in load_style(record).questions] == ["Which organelle makes ATP?"]
    assert record.material_ids == ["mat_1", "mat_2"]
    assert record.version == 2


def test_records_are_scoped_per_institute(knowledge_service_instance):
    """Test the same chapter at two institutes keeps separate records."""
    knowledge_service_instance.upsert_merge(CHAPTER, "inst_a", "m1", "A", scope=scope(["Cells"]))
    knowledge_service_instance.upsert_merge(CHAPTER, "inst_b", "m2", "B", scope=scope(["Organs"]))

    assert load_scope(knowledge_service_instance.fetch(CHAPTER, "inst_a")).topics == ["Cells"]
    assert load_scope(knowledge_service_instance.fetch(CHAPTER, "inst_b")).topics == ["Organs"]


def test_get_or_create_is_stable(knowledge_service_instance):
    """Test get_or_create returns the same record twice."""
    first = knowledge_service_instance.get_or_create(CHAPTER, INSTITUTE)
    second = knowledge_service_instance.get_or_create(CHAPTER, INSTITUTE)
    assert first.id == second.id
    assert knowledge_service_instance.fetch_by_id(first.id).chapter_id == CHAPTER


def test_fetch_by_id_not_found(knowledge_service_instance):
    """Test fetching an unknown record."""
    with pytest.raises(NotFoundException):
        knowledge_service_instance.fetch_by_id("ck_missing")


def test_analysis_attempt_lifecycle(knowledge_service_instance):
    """Test analyzing then completed for the owning attempt."""
    record, attempt_id = knowledge_service_instance.mark_analyzing(CHAPTER, INSTITUTE)
    assert record.status == "analyzing"
    assert record.analysis_attempt_id == attempt_id
    assert record.analysis_started_at is not None

    record = knowledge_service_instance.mark_completed(CHAPTER, INSTITUTE, attempt_id)
    assert record.status == "completed"
    assert record.analysis_completed_at is not None


def test_superseded_attempt_cannot_complete(knowledge_service_instance):
    """Test a stale attempt's completion is ignored."""
    _, old_attempt = knowledge_service_instance.mark_analyzing(CHAPTER, INSTITUTE)
    _, new_attempt = knowledge_service_instance.mark_analyzing(CHAPTER, INSTITUTE)

    record = knowledge_service_instance.mark_completed(CHAPTER, INSTITUTE, old_attempt)
    assert record.status == "analyzing"
    assert record.analysis_attempt_id == new_attempt

    record = knowledge_service_instance.mark_failed(CHAPTER, INSTITUTE, old_attempt, "late")
    assert record.status == "analyzing"
    assert record.analysis_error is None


def test_mark_failed_keeps_cached_scope(knowledge_service_instance):
    """Test failure records the error without discarding earlier knowledge."""
    knowledge_service_instance.upsert_merge(
        CHAPTER, INSTITUTE, "mat_1", "Notes", scope=scope(["Cells"])
    )
    _, attempt_id = knowledge_service_instance.mark_analyzing(CHAPTER, INSTITUTE)

    record = knowledge_service_instance.mark_failed(CHAPTER, INSTITUTE, attempt_id, "LLM down")

    assert record.status == "failed"
    assert record.analysis_error == "LLM down"
    assert load_scope(record).topics == ["Cells"]


def test_mark_completed_missing_record(knowledge_service_instance):
    """Test completion of an attempt on a missing record."""
    with pytest.raises(NotFoundException):
        knowledge_service_instance.mark_completed(CHAPTER, INSTITUTE, "attempt_x")


def test_remove_material_keeps_knowledge(knowledge_service_instance):
    """Test removing a material forgets its ID only."""
    knowledge_service_instance.upsert_merge(CHAPTER, INSTITUTE, "mat_1", "Notes", scope=scope(["Cells"]))
    knowledge_service_instance.upsert_merge(CHAPTER, INSTITUTE, "mat_2", "Slides", scope=scope(["Organs"]))

    record = knowledge_service_instance.remove_material(CHAPTER, INSTITUTE, "mat_1")

    assert record.material_ids == ["mat_2"]
    assert load_scope(record).topics == ["Cells", "Organs"]


def test_remove_material_missing_record(knowledge_service_instance):
    """Test removing a material from a chapter with no knowledge."""
    with pytest.raises(NotFoundException):
        knowledge_service_instance.remove_material(CHAPTER, INSTITUTE, "mat_1")


def test_stale_write_is_rejected(db_session: Session):
    """Test the version column rejects a write based on an old read."""
    ChapterKnowledgeService(db_session).get_or_create(CHAPTER, INSTITUTE)
    first = SessionLocal()
    second = SessionLocal()
    try:
        record_a = first.query(ChapterKnowledge).filter_by(chapter_id=CHAPTER).one()
        record_b = second.query(ChapterKnowledge).filter_by(chapter_id=CHAPTER).one()

        record_b.material_ids = ["from_b"]
        second.commit()

        record_a.material_ids = ["from_a"]
        with pytest.raises(StaleDataError):
            first.commit()
    finally:
        first.rollback()
        first.close()
        second.close()


def test_upsert_merge_replays_after_concurrent_write(db_session: Session, monkeypatch):
    """Test a merge that loses a race is replayed on the fresh record."""
    service = ChapterKnowledgeService(db_session)
    service.upsert_merge(CHAPTER, INSTITUTE, "mat_0", "Base notes", scope=scope(["Base"]))

    original_merge = knowledge_service.merge_scope_analyses
    state = {"raced": False}

    def racing_merge(existing, new, title):
        if not state["raced"]:
            state["raced"] = True
            other = SessionLocal()
            try:
                ChapterKnowledgeService(other).upsert_merge(
                    CHAPTER, INSTITUTE, "mat_2", "Competitor", scope=scope(["B"])
                )
            finally:
                other.close()
        return original_merge(existing, new, title)

    monkeypatch.setattr(knowledge_service, "merge_scope_analyses", racing_merge)

    record = service.upsert_merge(CHAPTER, INSTITUTE, "mat_1", "Mine", scope=scope(["A"]))

    merged = load_scope(record)
    assert merged.topics == ["Base", "B", "A"]
    assert record.material_ids == ["mat_0", "mat_2", "mat_1"]
    assert record.version == 3


def test_upsert_merge_gives_up_after_max_attempts(db_session: Session, monkeypatch):
    """Test a writer that loses every race raises a conflict."""
    service = ChapterKnowledgeService(db_session)
    service.max_attempts = 2
    service.upsert_merge(CHAPTER, INSTITUTE, "mat_0", "Base notes", scope=scope(["Base"]))

    original_merge = knowledge_service.merge_scope_analyses
    state = {"competing": False, "competitors": 0}

    def always_racing_merge(existing, new, title):
        if not state["competing"]:
            state["competing"] = True
            state["competitors"] += 1
            other = SessionLocal()
            try:
                ChapterKnowledgeService(other).upsert_merge(
                    CHAPTER, INSTITUTE, f"mat_c{state['competitors']}", "Competitor",
                    scope=scope([f"C{state['competitors']}"]),
                )
            finally:
                other.close()
                state["competing"] = False
        return original_merge(existing, new, title)

    monkeypatch.setattr(knowledge_service, "merge_scope_analyses", always_racing_merge)

    with pytest.raises(KnowledgeConflictException):
        service.upsert_merge(CHAPTER, INSTITUTE, "mat_1", "Mine", scope=scope(["A"]))

    assert state["competitors"] == 2
    db_session.expire_all()
    record = service.fetch(CHAPTER, INSTITUTE)
    assert "mat_1" not in record.material_ids
    assert load_scope(record).topics == ["Base", "C1", "C2"]
