"""Cost ledger: token usage records and daily/monthly aggregates."""

import copy
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from paperforge.config import settings
from paperforge.db.models import UsageAggregate, UsageRecord
from paperforge.exceptions import ValidationException
from paperforge.models.usage_models import (
    CostBreakdown,
    TokenUsage,
    UsageSummaryResponse,
)

logger = logging.getLogger(__name__)

# USD per 1M tokens
MODEL_PRICING: Dict[str, Dict[str, Dict[str, float]]] = {
    "gpt-4o": {
        "input": {"standard": 2.50, "batch": 1.25},
        "output": {"standard": 10.00, "batch": 5.00},
    },
    "gpt-4o-mini": {
        "input": {"standard": 0.15, "batch": 0.075},
        "output": {"standard": 0.60, "batch": 0.30},
    },
    "gpt-4.1": {
        "input": {"standard": 2.00, "batch": 1.00},
        "output": {"standard": 8.00, "batch": 4.00},
    },
    "gpt-4.1-mini": {
        "input": {"standard": 0.40, "batch": 0.20},
        "output": {"standard": 1.60, "batch": 0.80},
    },
}
DEFAULT_PRICING_MODEL = "gpt-4o-mini"

BREAKDOWN_KEYS = ("by_institute", "by_model", "by_operation")


def calculate_cost(usage: TokenUsage, model: str, mode: str = "standard") -> CostBreakdown:
    """
    Price a token usage figure.

    Args:
        usage: Prompt and completion token counts
        model: Model name, unknown models are priced as the default model
        mode: "standard" or "batch"

    Returns:
        CostBreakdown in USD and INR
    """
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        logger.warning(
            f"No pricing for model '{model}', using {DEFAULT_PRICING_MODEL} pricing"
        )
        pricing = MODEL_PRICING[DEFAULT_PRICING_MODEL]
    if mode not in pricing["input"]:
        mode = "standard"

    input_cost = usage.prompt_tokens / 1_000_000 * pricing["input"][mode]
    output_cost = usage.completion_tokens / 1_000_000 * pricing["output"][mode]
    total_usd = input_cost + output_cost
    return CostBreakdown(
        input_cost_usd=input_cost,
        output_cost_usd=output_cost,
        total_cost_usd=total_usd,
        total_cost_inr=total_usd * settings.usd_to_inr_rate,
    )


class UsageService:
    """Service for recording and summarizing LLM usage."""

    def __init__(self, db: Session):
        """
        Initialize usage service.

        Args:
            db: Database session
        """
        self.db = db

    def log_usage(
        self,
        *,
        institute_id: str,
        operation_type: str,
        model: str,
        usage: TokenUsage,
        paper_id: Optional[str] = None,
        section_id: Optional[str] = None,
        chapter_id: Optional[str] = None,
        questions_generated: int = 0,
        api_mode: str = "standard",
        usage_date: Optional[date] = None,
    ) -> Optional[UsageRecord]:
        """
        Append a ledger record and fold it into the daily and monthly aggregates.

        Ledger failures are logged and never raised, so a broken ledger does
        not fail the operation being billed. Callers should invoke this only
        after committing their own work.

        Returns:
            The created UsageRecord, or None if the ledger write failed
        """
        try:
            cost = calculate_cost(usage, model, api_mode)
            day = usage_date or datetime.now(timezone.utc).date()
            record = UsageRecord(
                id=f"usage_{uuid.uuid4().hex[:12]}",
                institute_id=institute_id,
                paper_id=paper_id,
                section_id=section_id,
                chapter_id=chapter_id,
                operation_type=operation_type,
                model_used=model,
                api_mode=api_mode,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                cost_usd=cost.total_cost_usd,
                cost_inr=cost.total_cost_inr,
                questions_generated=questions_generated,
                usage_date=day.isoformat(),
            )
            self.db.add(record)
            self._accumulate("daily", day.isoformat(), record)
            self._accumulate("monthly", day.strftime("%Y-%m"), record)
            self.db.commit()
            self.db.refresh(record)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to log {operation_type} usage for {institute_id}: {e}")
            return None

        logger.info(
            f"Logged {operation_type} usage: {usage.total_tokens} tokens, "
            f"${record.cost_usd:.4f} (INR {record.cost_inr:.2f}) on {model}"
        )
        return record

    def _accumulate(self, period_type: str, period_key: str, record: UsageRecord) -> None:
        aggregate = (
            self.db.query(UsageAggregate)
            .filter(
                UsageAggregate.period_type == period_type,
                UsageAggregate.period_key == period_key,
            )
            .first()
        )
        if aggregate is None:
            aggregate = UsageAggregate(
                period_type=period_type,
                period_key=period_key,
                total_operations=0,
                total_tokens=0,
                total_cost_usd=0.0,
                total_cost_inr=0.0,
                total_questions=0,
                breakdown={},
            )
            self.db.add(aggregate)

        aggregate.total_operations += 1
        aggregate.total_tokens += record.total_tokens
        aggregate.total_cost_usd += record.cost_usd
        aggregate.total_cost_inr += record.cost_inr
        aggregate.total_questions += record.questions_generated

        # JSON columns only persist on reassignment
        breakdown = copy.deepcopy(aggregate.breakdown or {})
        for key, group in (
            ("by_institute", record.institute_id),
            ("by_model", record.model_used),
            ("by_operation", record.operation_type),
        ):
            bucket = breakdown.setdefault(key, {}).setdefault(
                group,
                {"operations": 0, "tokens": 0, "cost_usd": 0.0, "cost_inr": 0.0, "questions": 0},
            )
            bucket["operations"] += 1
            bucket["tokens"] += record.total_tokens
            bucket["cost_usd"] += record.cost_usd
            bucket["cost_inr"] += record.cost_inr
            bucket["questions"] += record.questions_generated
        aggregate.breakdown = breakdown
        self.db.flush()

    def get_daily_summary(self, day: str) -> UsageSummaryResponse:
        """
        Get totals for one day.

        Args:
            day: Date in YYYY-MM-DD format

        Raises:
            ValidationException: If the date is malformed
        """
        try:
            datetime.strptime(day, "%Y-%m-%d")
        except ValueError as e:
            raise ValidationException(f"Invalid date '{day}', expected YYYY-MM-DD") from e
        return self._summary("daily", day)

    def get_monthly_summary(self, month: str) -> UsageSummaryResponse:
        """
        Get totals for one month.

        Args:
            month: Month in YYYY-MM format

        Raises:
            ValidationException: If the month is malformed
        """
        try:
            datetime.strptime(month, "%Y-%m")
        except ValueError as e:
            raise ValidationException(f"Invalid month '{month}', expected YYYY-MM") from e
        return self._summary("monthly", month)

    def _summary(self, period_type: str, period_key: str) -> UsageSummaryResponse:
        aggregate = (
            self.db.query(UsageAggregate)
            .filter(
                UsageAggregate.period_type == period_type,
                UsageAggregate.period_key == period_key,
            )
            .first()
        )
        if aggregate is None:
            return UsageSummaryResponse(period_type=period_type, period_key=period_key)

        breakdown = aggregate.breakdown or {}
        return UsageSummaryResponse(
            period_type=period_type,
            period_key=period_key,
            total_operations=aggregate.total_operations,
            total_tokens=aggregate.total_tokens,
            total_cost_usd=aggregate.total_cost_usd,
            total_cost_inr=aggregate.total_cost_inr,
            total_questions=aggregate.total_questions,
            **{key: breakdown.get(key, {}) for key in BREAKDOWN_KEYS},
        )

    def list_records(
        self,
        paper_id: Optional[str] = None,
        institute_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageRecord]:
        """List ledger records, newest first."""
        query = self.db.query(UsageRecord)
        if paper_id:
            query = query.filter(UsageRecord.paper_id == paper_id)
        if institute_id:
            query = query.filter(UsageRecord.institute_id == institute_id)
        return query.order_by(UsageRecord.created_at.desc()).limit(limit).all()
