"""Pytest configuration and shared fixtures."""
import json
import os
import tempfile

# Settings are read once at import time, so the test environment must be set first
_TEST_DIR = tempfile.mkdtemp(prefix="paperforge-tests-")
os.environ["OPENAI_API_KEY"] = "sk-test-key-0123456789abcdef"
os.environ["DATABASE_PATH"] = os.path.join(_TEST_DIR, "paperforge-test.db")
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["GENERATION_RETRY_DELAY_SEC"] = "0"
os.environ["PROOFREAD_RETRY_DELAY_SEC"] = "0"
os.environ["ANALYSIS_RETRY_DELAY_SEC"] = "0"

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from paperforge.db import models  # noqa: F401
from paperforge.db.database import Base, SessionLocal, engine, get_db
from paperforge.db.models import Paper, Question, Section
from paperforge.main import app
from paperforge.services.llm_client import LLMClient, get_llm_client


def openai_response(content, prompt_tokens=60, completion_tokens=40):
    """Build a fake chat completion carrying ``content``."""
    return MagicMock(
        choices=[MagicMock(message=MagicMock(content=content))],
        usage=MagicMock(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def make_llm(*contents):
    """
    LLM client whose successive calls return ``contents`` in order.

    Exceptions in ``contents`` are raised by the corresponding call.
    """
    client = MagicMock()
    client.chat.completions.create.side_effect = [
        item if isinstance(item, BaseException) else openai_response(item)
        for item in contents
    ]
    return LLMClient(openai_client=client)


def question_items(count, prefix="Question", answer="A"):
    """Raw question items in the shape the generation prompt asks for."""
    return [
        {
            "questionText": f"{prefix} {index}: which organelle makes ATP?",
            "options": {
                "A": "Mitochondrion",
                "B": "Ribosome",
                "C": "Golgi body",
                "D": "Lysosome",
            },
            "correctAnswer": answer,
            "explanation": "Mitochondria carry out oxidative phosphorylation.",
            "archetype": "directRecall",
            "structuralForm": "standard_mcq",
            "cognitiveLoad": "low",
            "topic": "Cell organelles",
        }
        for index in range(1, count + 1)
    ]


def questions_json(count, prefix="Question", answer="A"):
    return json.dumps({"questions": question_items(count, prefix, answer)})


def corrections_json(question_ids, question_text="Corrected stem", answer="B"):
    """Proofreading output flagging ``question_ids``."""
    return json.dumps(
        {
            "corrections": [
                {
                    "questionId": question_id,
                    "issue": "Wrong option marked as correct",
                    "corrected": {
                        "id": question_id,
                        "question": f"{question_text} for {question_id}",
                        "options": {"A": "One", "B": "Two", "C": "Three", "D": "Four"},
                        "correctAnswer": answer,
                        "explanation": "Two is the only even prime.",
                    },
                }
                for question_id in question_ids
            ]
        }
    )


NO_CORRECTIONS = json.dumps({"corrections": []})


@pytest.fixture
def db_session():
    """Create a test database session."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def llm_holder():
    """Mutable slot for the LLM client the API should use."""
    return {"client": make_llm()}


@pytest.fixture
def client(db_session, llm_holder):
    """Create a test client with database and LLM dependency overrides."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_llm_client] = lambda: llm_holder["client"]

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def seed_section(db_session):
    """
    Factory creating a legacy paper whose single section holds ``count``
    stored questions in the given status.
    """

    def _seed(count, status="in_review", question_count=None, explanation="Because."):
        paper = Paper(
            id="paper_seed",
            institute_id="inst_01",
            title="Seeded paper",
            question_count=question_count or max(count, 1),
            difficulty_level="balanced",
            status="draft",
        )
        section = Section(
            id="sec_seed",
            subject="Biology",
            section_name="Biology",
            section_order=1,
            question_count=question_count or max(count, 1),
            status=status,
            batch_metadata={},
        )
        paper.sections.append(section)
        for index in range(1, count + 1):
            section.questions.append(
                Question(
                    id=f"q_seed_{index:03d}",
                    paper_id="paper_seed",
                    chapter_id="ch_cell",
                    question_text=f"Seeded question {index}",
                    options={"A": "One", "B": "Two", "C": "Three", "D": "Four"},
                    correct_answer="A",
                    explanation=explanation,
                    question_metadata={"form": "standard"},
                    question_order=index,
                )
            )
        db_session.add(paper)
        db_session.commit()
        db_session.refresh(section)
        return section

    return _seed
