"""SQLAlchemy database models for papers, sections, questions, chapter knowledge and usage."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from paperforge.db.database import Base


class Paper(Base):
    """Top-level exam paper composed of one or more sections."""

    __tablename__ = "papers"

    id = Column(String, primary_key=True, index=True)
    institute_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    # Set for papers instantiated from a multi-section template, NULL for legacy papers
    paper_template_id = Column(String, nullable=True, index=True)
    question_count = Column(Integer, nullable=False)
    difficulty_level = Column(String, nullable=False, default="balanced")
    status = Column(String, nullable=False, default="draft", index=True)  # draft, finalized
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    sections = relationship(
        "Section",
        back_populates="paper",
        cascade="all, delete-orphan",
        order_by="Section.section_order",
    )

    @property
    def is_templated(self) -> bool:
        return self.paper_template_id is not None

    def __repr__(self):
        return f"<Paper(id={self.id}, status={self.status})>"


class Section(Base):
    """Subject-scoped slice of a paper that progresses independently."""

    __tablename__ = "sections"

    id = Column(String, primary_key=True, index=True)
    paper_id = Column(
        String, ForeignKey("papers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    subject = Column(String, nullable=False)
    section_name = Column(String, nullable=False)
    section_order = Column(Integer, nullable=False, default=1)
    question_count = Column(Integer, nullable=False)
    marks_per_question = Column(Float, nullable=False, default=4.0)
    negative_marks = Column(Float, nullable=False, default=0.0)

    # pending, ready, in_review, finalized
    status = Column(String, nullable=False, default="pending", index=True)
    chapters_assigned_at = Column(DateTime(timezone=True), nullable=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)

    # Generation stats and the latest proofreading run record
    batch_metadata = Column(JSON, nullable=True, default=dict)

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    paper = relationship("Paper", back_populates="sections")
    chapters = relationship(
        "SectionChapter",
        back_populates="section",
        cascade="all, delete-orphan",
        order_by="SectionChapter.position",
    )
    questions = relationship(
        "Question",
        back_populates="section",
        cascade="all, delete-orphan",
        order_by="Question.question_order",
    )

    def __repr__(self):
        return f"<Section(id={self.id}, status={self.status})>"


class SectionChapter(Base):
    """Chapter assigned to a section as a question source."""

    __tablename__ = "section_chapters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    section_id = Column(
        String, ForeignKey("sections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    chapter_id = Column(String, nullable=False, index=True)
    chapter_name = Column(String, nullable=True)
    position = Column(Integer, nullable=False, default=0)

    section = relationship("Section", back_populates="chapters")

    __table_args__ = (UniqueConstraint("section_id", "chapter_id", name="uq_section_chapter"),)


class Question(Base):
    """Generated question belonging to exactly one section."""

    __tablename__ = "questions"

    id = Column(String, primary_key=True, index=True)
    paper_id = Column(
        String, ForeignKey("papers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    section_id = Column(
        String, ForeignKey("sections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    chapter_id = Column(String, nullable=True, index=True)
    question_text = Column(Text, nullable=False)
    options = Column(JSON, nullable=False, default=dict)
    correct_answer = Column(String, nullable=False)
    explanation = Column(Text, nullable=True)
    question_metadata = Column(
        "metadata", JSON, nullable=True, default=dict
    )  # Using "metadata" as column name but question_metadata as attribute
    marks = Column(Float, nullable=False, default=4.0)
    negative_marks = Column(Float, nullable=False, default=0.0)
    is_selected = Column(Boolean, nullable=False, default=False, index=True)
    question_order = Column(Integer, nullable=False, default=0)
    generation_attempt_id = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    section = relationship("Section", back_populates="questions")

    def __repr__(self):
        return f"<Question(id={self.id}, section_id={self.section_id})>"


class ChapterKnowledge(Base):
    """Cached topic and style knowledge for one chapter at one institute."""

    __tablename__ = "chapter_knowledge"

    id = Column(String, primary_key=True, index=True)
    chapter_id = Column(String, nullable=False, index=True)
    institute_id = Column(String, nullable=False, index=True)
    scope_analysis = Column(JSON, nullable=True)
    style_examples = Column(JSON, nullable=True)
    material_ids = Column(JSON, nullable=False, default=list)

    # pending, analyzing, completed, failed
    status = Column(String, nullable=False, default="pending", index=True)
    analysis_attempt_id = Column(String, nullable=True)
    analysis_started_at = Column(DateTime(timezone=True), nullable=True)
    analysis_completed_at = Column(DateTime(timezone=True), nullable=True)
    analysis_error = Column(Text, nullable=True)
    last_updated_by_material_id = Column(String, nullable=True)

    # Bumped by every UPDATE; a stale writer fails with StaleDataError
    version = Column(Integer, nullable=False)

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("chapter_id", "institute_id", name="uq_chapter_knowledge_chapter_institute"),
    )
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return (
            f"<ChapterKnowledge(chapter_id={self.chapter_id}, institute_id={self.institute_id}, "
            f"status={self.status}, version={self.version})>"
        )


class UsageRecord(Base):
    """One LLM operation's token usage and cost."""

    __tablename__ = "usage_records"

    id = Column(String, primary_key=True, index=True)
    institute_id = Column(String, nullable=False, index=True)
    paper_id = Column(String, nullable=True, index=True)
    section_id = Column(String, nullable=True, index=True)
    chapter_id = Column(String, nullable=True)
    operation_type = Column(String, nullable=False, index=True)  # generate, regenerate, proofread, analyze
    model_used = Column(String, nullable=False)
    api_mode = Column(String, nullable=False, default="standard")
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    cost_usd = Column(Float, nullable=False, default=0.0)
    cost_inr = Column(Float, nullable=False, default=0.0)
    questions_generated = Column(Integer, nullable=False, default=0)
    usage_date = Column(String, nullable=False, index=True)  # YYYY-MM-DD
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<UsageRecord(id={self.id}, operation={self.operation_type}, tokens={self.total_tokens})>"


class UsageAggregate(Base):
    """Running daily or monthly totals rebuilt from usage records."""

    __tablename__ = "usage_aggregates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    period_type = Column(String, nullable=False)  # daily, monthly
    period_key = Column(String, nullable=False)  # YYYY-MM-DD or YYYY-MM
    total_operations = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    total_cost_usd = Column(Float, nullable=False, default=0.0)
    total_cost_inr = Column(Float, nullable=False, default=0.0)
    total_questions = Column(Integer, nullable=False, default=0)
    breakdown = Column(JSON, nullable=False, default=dict)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("period_type", "period_key", name="uq_usage_aggregate_period"),
    )

    def __repr__(self):
        return f"<UsageAggregate({self.period_type}={self.period_key}, tokens={self.total_tokens})>"
