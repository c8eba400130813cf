"""Business rules for section counts, editability and status transitions."""

from typing import Iterable, List, Sequence

from paperforge.config import settings
from paperforge.db.models import Paper, Section
from paperforge.exceptions import StateTransitionException, ValidationException

# Sections can be edited only before generation
EDITABLE_STATUSES = ("pending", "ready")


def validate_question_count(count: int) -> None:
    if count < 1:
        raise ValidationException(
            "Section must have at least 1 question", details={"question_count": count}
        )
    if count > settings.max_questions_per_section:
        raise ValidationException(
            f"Section cannot exceed {settings.max_questions_per_section} questions",
            details={"question_count": count},
        )


def validate_paper_counts(counts: Sequence[int]) -> int:
    """
    Validate the target counts of a new paper's sections.

    Returns:
        The paper's total target count

    Raises:
        ValidationException: If any section or the total is out of range
    """
    if not counts:
        raise ValidationException("Papers must have at least one section")
    for count in counts:
        validate_question_count(count)
    total = sum(counts)
    _check_total(total)
    return total


def validate_section_question_count(
    section_id: str, new_count: int, all_sections: Iterable[Section]
) -> int:
    """
    Validate a change to one section's target count.

    Args:
        section_id: Section being edited
        new_count: Proposed target count
        all_sections: Every section of the paper, including the edited one

    Returns:
        The paper's new total target count
    """
    validate_question_count(new_count)
    new_total = sum(
        new_count if section.id == section_id else section.question_count
        for section in all_sections
    )
    _check_total(new_total)
    return new_total


def _check_total(total: int) -> None:
    limit = settings.max_questions_per_paper
    if total > limit:
        raise ValidationException(
            f"Total would be {total} questions (limit: {limit}). "
            f"Reduce by {total - limit} questions.",
            details={"total": total, "limit": limit},
        )


def require_section_status(section: Section, allowed: Sequence[str], action: str) -> None:
    if section.status not in allowed:
        raise StateTransitionException(
            f"Cannot {action}: section is '{section.status}', "
            f"expected one of {', '.join(allowed)}",
            details={"section_id": section.id, "status": section.status, "allowed": list(allowed)},
        )


def require_paper_not_finalized(paper: Paper, action: str) -> None:
    if paper.status == "finalized":
        raise StateTransitionException(
            f"Cannot {action}: paper is finalized",
            details={"paper_id": paper.id},
        )


def derive_paper_status(paper: Paper) -> str:
    """
    Summarize a paper's progress from its sections.

    Returns:
        "finalized" once the paper is finalized; "ready_to_finalize" when the
        paper-level finalize precondition holds; "in_review" when every
        section has reached review; "in_progress" once any section has
        chapters; else "draft"
    """
    if paper.status == "finalized":
        return "finalized"
    statuses: List[str] = [section.status for section in paper.sections]
    if not statuses or all(status == "pending" for status in statuses):
        return "draft"
    if paper.is_templated and all(status == "finalized" for status in statuses):
        return "ready_to_finalize"
    if all(status in ("in_review", "finalized") for status in statuses):
        if not paper.is_templated and count_selected(paper) == paper.question_count:
            return "ready_to_finalize"
        return "in_review"
    return "in_progress"


def count_selected(paper: Paper) -> int:
    return sum(
        1 for section in paper.sections for question in section.questions if question.is_selected
    )
