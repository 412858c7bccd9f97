"""
Health Monitor - Read-only provisioning health over the trace log.

An attempt succeeded when its FINALIZE step completed. Anything else
(failed FINALIZE, or no FINALIZE at all) counts as a failure.
"""

from collections import Counter
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard_engine.db.models import ProvisioningTraceStep
from giftcard_engine.models.api import StockLevel, TraceStatus
from giftcard_engine.models.domain import (
    AttemptSummary,
    ErrorCodeStat,
    FailedAttempt,
    HealthSnapshot,
    InventoryLevel,
    TraceStepData,
)
from giftcard_engine.services.inventory import InventoryStore
from giftcard_engine.services.trace_store import TraceStep, TraceStore

_FINALIZE = TraceStep.FINALIZE.value


def classify_stock(
    available: int, healthy_threshold: int = 50, low_threshold: int = 10
) -> StockLevel:
    """Bucket an available count."""
    if available >= healthy_threshold:
        return StockLevel.HEALTHY
    if available >= low_threshold:
        return StockLevel.LOW
    if available > 0:
        return StockLevel.CRITICAL
    return StockLevel.EMPTY


def summarize_attempts(attempts: list[AttemptSummary], window_hours: int) -> HealthSnapshot:
    """Aggregate attempt summaries into a health snapshot."""
    total = len(attempts)
    failed = sum(1 for attempt in attempts if attempt.failed)
    successful = total - failed

    codes = Counter(a.error_code for a in attempts if a.failed and a.error_code)
    top_code, top_count = codes.most_common(1)[0] if codes else (None, 0)

    return HealthSnapshot(
        window_hours=window_hours,
        total_attempts=total,
        successful_attempts=successful,
        failed_attempts=failed,
        success_rate=round(successful * 100 / total, 2) if total else 0.0,
        avg_duration_ms=(
            round(sum(a.duration_ms for a in attempts) / total, 2) if total else None
        ),
        top_error_code=top_code,
        top_error_count=top_count,
    )


class HealthMonitor:
    """Aggregates provisioning attempts and inventory levels."""

    def __init__(
        self,
        session: AsyncSession,
        healthy_threshold: int = 50,
        low_threshold: int = 10,
    ) -> None:
        self.session = session
        self.healthy_threshold = healthy_threshold
        self.low_threshold = low_threshold

    async def get_health(self, hours: int = 24) -> HealthSnapshot:
        """Success rate and timing over the last `hours`."""
        return summarize_attempts(await self.get_attempts(hours), hours)

    async def get_attempts(self, hours: int = 24) -> list[AttemptSummary]:
        """One summary per request_id seen in the window."""
        cutoff = datetime.now(UTC) - timedelta(hours=hours)
        is_finalize = ProvisioningTraceStep.step_name == _FINALIZE
        stmt = (
            select(
                ProvisioningTraceStep.request_id,
                func.coalesce(func.sum(ProvisioningTraceStep.duration_ms), 0),
                func.max(
                    case(
                        (
                            and_(
                                is_finalize,
                                ProvisioningTraceStep.status == TraceStatus.COMPLETED.value,
                            ),
                            1,
                        ),
                        else_=0,
                    )
                ),
                func.max(case((is_finalize, ProvisioningTraceStep.error_code), else_=None)),
            )
            .where(ProvisioningTraceStep.created_at >= cutoff)
            .group_by(ProvisioningTraceStep.request_id)
        )
        result = await self.session.execute(stmt)
        return [
            AttemptSummary(
                request_id=row[0],
                failed=int(row[2] or 0) != 1,
                duration_ms=int(row[1] or 0),
                error_code=row[3],
            )
            for row in result.fetchall()
        ]

    async def get_error_stats(self, hours: int = 24) -> list[ErrorCodeStat]:
        """Per-code failure counts, most frequent first."""
        cutoff = datetime.now(UTC) - timedelta(hours=hours)
        occurrences = func.count(func.distinct(ProvisioningTraceStep.request_id))
        stmt = (
            select(
                ProvisioningTraceStep.error_code,
                occurrences,
                func.max(ProvisioningTraceStep.created_at),
                func.count(func.distinct(ProvisioningTraceStep.campaign_id)),
            )
            .where(
                ProvisioningTraceStep.created_at >= cutoff,
                ProvisioningTraceStep.step_name == _FINALIZE,
                ProvisioningTraceStep.status == TraceStatus.FAILED.value,
                ProvisioningTraceStep.error_code.isnot(None),
            )
            .group_by(ProvisioningTraceStep.error_code)
            .order_by(occurrences.desc(), ProvisioningTraceStep.error_code)
        )
        result = await self.session.execute(stmt)
        return [
            ErrorCodeStat(
                error_code=row[0],
                occurrences=int(row[1]),
                last_occurred=row[2],
                affected_campaigns=int(row[3]),
            )
            for row in result.fetchall()
        ]

    async def get_recent_failures(
        self,
        limit: int = 50,
        campaign_id: UUID | None = None,
        hours: int = 24,
    ) -> list[FailedAttempt]:
        """
        Newest failed attempts.

        Each attempt is reported by the step that failed; attempts that only
        failed at FINALIZE (unexpected errors) are reported by that step.
        """
        cutoff = datetime.now(UTC) - timedelta(hours=hours)
        stmt = (
            select(ProvisioningTraceStep)
            .where(
                ProvisioningTraceStep.created_at >= cutoff,
                ProvisioningTraceStep.status == TraceStatus.FAILED.value,
            )
            .order_by(ProvisioningTraceStep.created_at.desc())
            .limit(limit * 2)
        )
        if campaign_id is not None:
            stmt = stmt.where(ProvisioningTraceStep.campaign_id == campaign_id)
        result = await self.session.execute(stmt)

        chosen: dict[str, ProvisioningTraceStep] = {}
        for row in result.scalars().all():
            current = chosen.get(row.request_id)
            if current is None or (current.step_name == _FINALIZE and row.step_name != _FINALIZE):
                chosen[row.request_id] = row

        failures = [
            FailedAttempt(
                request_id=row.request_id,
                campaign_id=row.campaign_id,
                recipient_id=row.recipient_id,
                brand_id=row.brand_id,
                denomination=row.denomination,
                step_name=row.step_name,
                error_code=row.error_code,
                error_message=row.error_message,
                failed_at=row.created_at,
            )
            for row in chosen.values()
        ]
        failures.sort(key=lambda f: f.failed_at, reverse=True)
        return failures[:limit]

    async def get_trace(self, request_id: str) -> list[TraceStepData]:
        """Full step trace for one attempt."""
        return await TraceStore(self.session).get_trace(request_id)

    async def get_inventory_levels(self) -> list[InventoryLevel]:
        """Stock levels for every enabled brand/denomination."""
        rows = await InventoryStore(self.session).available_levels()
        return [
            InventoryLevel(
                brand_id=brand_id,
                brand_name=brand_name,
                denomination=denomination,
                available=available,
                level=classify_stock(available, self.healthy_threshold, self.low_threshold),
            )
            for brand_id, brand_name, denomination, available in rows
        ]
