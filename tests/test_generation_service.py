"""Unit tests for the question generation service."""

import json

import pytest
from sqlalchemy.orm import Session

from conftest import make_llm, question_items, questions_json
from paperforge.db.models import UsageRecord
from paperforge.exceptions import GenerationException, ValidationException
from paperforge.models.knowledge_models import ScopeAnalysis
from paperforge.models.paper_models import ChapterAssignment, PaperCreate
from paperforge.models.question_models import MatchFollowingMetadata, StandardMetadata
from paperforge.services.generation_service import (
    QuestionGenerator,
    distribute_evenly,
    map_difficulty,
    parse_generated_items,
    split_into_calls,
)
from paperforge.services.knowledge_service import ChapterKnowledgeService
from paperforge.services.paper_service import PaperService


@pytest.fixture
def ready_section(db_session: Session):
    """A legacy paper section with two chapters assigned."""
    service = PaperService(db_session)
    paper = service.create_paper(
        PaperCreate(
            institute_id="inst_01",
            title="Biology Unit Test",
            subject="Biology",
            question_count=10,
        )
    )
    return service.assign_chapters(
        paper.sections[0].id,
        [
            ChapterAssignment(chapter_id="ch_cell", chapter_name="The Cell"),
            ChapterAssignment(chapter_id="ch_tissue", chapter_name="Tissues"),
        ],
    )


def prompt_of(llm, call_index):
    call = llm.client.chat.completions.create.call_args_list[call_index]
    return call.kwargs["messages"][-1]["content"]


class TestDifficultyMapping:
    """Difficulty to question mix mapping."""

    def test_balanced(self):
        config = map_difficulty("balanced", 20)
        assert config.archetype_distribution["direct_recall"] == 0.60
        assert config.cognitive_load == {"low": 0.40, "medium": 0.45, "high": 0.15}
        assert config.warmup_count == 2
        assert config.max_consecutive_high == 2
        assert len(config.prohibitions) == 10

    def test_easy_and_hard(self):
        assert map_difficulty("easy", 10).archetype_distribution["direct_recall"] == 0.65
        assert map_difficulty("hard", 10).cognitive_load["high"] == 0.16

    def test_warmup_is_capped(self):
        assert map_difficulty("balanced", 100).warmup_count == 3
        assert map_difficulty("balanced", 5).warmup_count == 0

    def test_mixes_sum_to_one(self):
        for level in ("easy", "balanced", "hard"):
            config = map_difficulty(level, 30)
            assert sum(config.archetype_distribution.values()) == pytest.approx(1.0)
            assert sum(config.structural_forms.values()) == pytest.approx(1.0)
            assert sum(config.cognitive_load.values()) == pytest.approx(1.0)

    def test_unknown_difficulty(self):
        with pytest.raises(ValidationException):
            map_difficulty("impossible", 10)


def test_distribute_evenly():
    """Test counts differ by at most one and sum to the total."""
    assert distribute_evenly(15, 2) == [8, 7]
    assert distribute_evenly(10, 3) == [4, 3, 3]
    assert distribute_evenly(2, 3) == [1, 1, 0]
    assert distribute_evenly(5, 0) == []


def test_split_into_calls():
    """Test a chapter share is split into calls of at most the batch size."""
    assert split_into_calls(60, 60) == [60]
    assert split_into_calls(135, 60) == [45, 45, 45]
    assert split_into_calls(0, 60) == []


class TestParseGeneratedItems:
    """Validation of raw model items."""

    def test_valid_items(self):
        questions = parse_generated_items(question_items(2), "ch_cell", "balanced")
        assert len(questions) == 2
        question = questions[0]
        assert question.correct_answer == "A"
        assert question.chapter_id == "ch_cell"
        assert isinstance(question.metadata, StandardMetadata)
        assert question.metadata.archetype == "direct_recall"
        assert question.metadata.cognitive_load == "low"
        assert question.metadata.difficulty == "balanced"

    def test_list_options_and_text_answer(self):
        item = {
            "question": "Which is the largest organ?",
            "options": ["Skin", "Liver", "Heart", "Lung"],
            "answer": "Liver",
        }
        [question] = parse_generated_items([item], "ch_body", "easy")
        assert question.options == {"A": "Skin", "B": "Liver", "C": "Heart", "D": "Lung"}
        assert question.correct_answer == "B"

    def test_lowercase_label_answer(self):
        item = question_items(1, answer="(c)")[0]
        [question] = parse_generated_items([item], "ch_cell", "balanced")
        assert question.correct_answer == "C"

    def test_answer_not_an_option_is_dropped(self):
        item = question_items(1, answer="E")[0]
        assert parse_generated_items([item, "junk"], "ch_cell", "balanced") == []

    def test_missing_stem_is_dropped(self):
        item = question_items(1)[0]
        item["questionText"] = ""
        assert parse_generated_items([item], "ch_cell", "balanced") == []

    def test_match_following_metadata(self):
        item = question_items(1)[0]
        item["structuralForm"] = "matchFollowing"
        item["columnA"] = ["P", "Q", "R", "S"]
        item["columnB"] = ["1", "2", "3", "4"]
        [question] = parse_generated_items([item], "ch_cell", "hard")
        assert isinstance(question.metadata, MatchFollowingMetadata)
        assert question.metadata.column_a == ["P", "Q", "R", "S"]

    def test_negative_phrasing_is_standard_form(self):
        item = question_items(1)[0]
        item["structuralForm"] = "negativePhrasing"
        [question] = parse_generated_items([item], "ch_cell", "hard")
        assert question.metadata.form == "standard"
        assert question.metadata.negative_phrasing is True


def test_generate_for_section_over_generates(db_session: Session, ready_section):
    """Test the target is 1.5x the section count spread over chapters."""
    llm = make_llm(questions_json(8, "Cell"), questions_json(7, "Tissue"))
    generator = QuestionGenerator(db_session, llm_client=llm)

    result = generator.generate_for_section(ready_section, "balanced")

    assert result.target_count == 15
    assert result.calls == 2
    assert len(result.questions) == 15
    assert [q.chapter_id for q in result.questions].count("ch_cell") == 8
    assert result.token_usage.total_tokens == 200
    assert 'chapter "The Cell"' in prompt_of(llm, 0)
    assert "Write 7 multiple choice questions" in prompt_of(llm, 1)
    # Second call is told what the first already wrote
    assert "Cell 1: which organelle makes ATP?" in prompt_of(llm, 1)

    usage = db_session.query(UsageRecord).one()
    assert usage.operation_type == "generate"
    assert usage.questions_generated == 15
    assert usage.section_id == ready_section.id


def test_generate_retries_bad_batch(db_session: Session, ready_section):
    """Test an unparseable response is retried."""
    llm = make_llm("Sorry, here you go", questions_json(8), questions_json(7))
    generator = QuestionGenerator(db_session, llm_client=llm)

    result = generator.generate_for_section(ready_section, "balanced")

    assert len(result.questions) == 15
    assert result.calls == 3


def test_generate_gives_up_after_retries(db_session: Session, ready_section):
    """Test a chapter that keeps failing raises GenerationException."""
    bad = json.dumps({"questions": question_items(3, answer="Z")})
    llm = make_llm(bad, bad, bad)
    generator = QuestionGenerator(db_session, llm_client=llm)

    with pytest.raises(GenerationException) as exc_info:
        generator.generate_for_section(ready_section, "balanced")

    assert exc_info.value.details["chapter_id"] == "ch_cell"
    assert len(exc_info.value.details["attempts"]) == 3
    # Failed attempts are still billed
    assert db_session.query(UsageRecord).one().total_tokens == 300


def test_generate_uses_completed_knowledge_only(db_session: Session, ready_section):
    """Test chapter knowledge reaches the prompt only once analysis completed."""
    knowledge = ChapterKnowledgeService(db_session)
    knowledge.upsert_merge(
        "ch_cell", "inst_01", "mat_1", "Notes",
        scope=ScopeAnalysis(topics=["Mitochondria"], depth_indicators={"Mitochondria": "advanced"}),
    )
    _, attempt_id = knowledge.mark_analyzing("ch_cell", "inst_01")

    llm = make_llm(questions_json(8), questions_json(7))
    QuestionGenerator(db_session, llm_client=llm).generate_for_section(ready_section, "balanced")
    assert "Stay within these chapter topics" not in prompt_of(llm, 0)

    knowledge.mark_completed("ch_cell", "inst_01", attempt_id)
    llm = make_llm(questions_json(8), questions_json(7))
    QuestionGenerator(db_session, llm_client=llm).generate_for_section(ready_section, "balanced")
    assert "- Mitochondria (advanced)" in prompt_of(llm, 0)


def test_generate_without_chapters(db_session: Session):
    """Test a section with no chapters cannot be generated."""
    paper = PaperService(db_session).create_paper(
        PaperCreate(institute_id="inst_01", title="Empty", subject="Physics", question_count=5)
    )
    generator = QuestionGenerator(db_session, llm_client=make_llm())

    with pytest.raises(GenerationException):
        generator.generate_for_section(paper.sections[0], "balanced")
