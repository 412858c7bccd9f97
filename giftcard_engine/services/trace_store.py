"""
Provisioning Trace Store - Step-by-step record of every provisioning attempt.

Steps are buffered in memory while the attempt runs and written in one
batch at the end, so a rollback inside the attempt never loses the trace.
"""

import time
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from giftcard_engine.db.models import ProvisioningTraceStep
from giftcard_engine.models.api import TraceStatus
from giftcard_engine.models.domain import TraceStepData

logger = get_logger(__name__)


class TraceStep(str, Enum):
    """Named steps of the provisioning waterfall."""

    VALIDATE_INPUT = "VALIDATE_INPUT"
    VALIDATE_CONFIG = "VALIDATE_CONFIG"
    CLAIM_INVENTORY = "CLAIM_INVENTORY"
    CHECK_EXTERNAL_CONFIG = "CHECK_EXTERNAL_CONFIG"
    EXTERNAL_PURCHASE = "EXTERNAL_PURCHASE"
    SAVE_EXTERNAL_CARD = "SAVE_EXTERNAL_CARD"
    RESOLVE_PRICING = "RESOLVE_PRICING"
    FINALIZE = "FINALIZE"


class ProvisioningTracer:
    """Collects trace steps for one request_id."""

    def __init__(
        self,
        session: AsyncSession,
        request_id: str,
        campaign_id: UUID | None = None,
        recipient_id: UUID | None = None,
        brand_id: UUID | None = None,
        denomination: Decimal | None = None,
    ) -> None:
        self.session = session
        self.request_id = request_id
        self.campaign_id = campaign_id
        self.recipient_id = recipient_id
        self.brand_id = brand_id
        self.denomination = denomination
        self._steps: list[TraceStepData] = []
        self._open: dict[int, tuple[TraceStep, float]] = {}
        self._next_number = 1

    @property
    def steps(self) -> list[TraceStepData]:
        """Steps recorded so far, in order."""
        return list(self._steps)

    def start(self, step: TraceStep) -> int:
        """Open a step and return its number."""
        number = self._next_number
        self._next_number += 1
        self._open[number] = (step, time.perf_counter())
        return number

    def complete(self, number: int, details: dict[str, str] | None = None) -> None:
        """Close a step as completed."""
        self._close(number, TraceStatus.COMPLETED, details)

    def fail(
        self,
        number: int,
        error_code: str,
        error_message: str,
        details: dict[str, str] | None = None,
    ) -> None:
        """Close a step as failed."""
        self._close(number, TraceStatus.FAILED, details, error_code, error_message)

    def skip(self, step: TraceStep, reason: str) -> None:
        """Record a step that did not run."""
        number = self.start(step)
        self._close(number, TraceStatus.SKIPPED, {"reason": reason})

    def _close(
        self,
        number: int,
        status: TraceStatus,
        details: dict[str, str] | None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        step, started = self._open.pop(number)
        self._steps.append(
            TraceStepData(
                step_number=number,
                step_name=step.value,
                status=status,
                duration_ms=int((time.perf_counter() - started) * 1000),
                details=details or {},
                error_code=error_code,
                error_message=error_message,
                created_at=datetime.now(UTC),
            )
        )

    async def persist(self) -> None:
        """
        Write buffered steps.

        Steps still open (interrupted by an unexpected error) are written as
        started. A write failure is logged and never propagated.
        """
        for number in sorted(self._open):
            step, started = self._open[number]
            self._steps.append(
                TraceStepData(
                    step_number=number,
                    step_name=step.value,
                    status=TraceStatus.STARTED,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                    created_at=datetime.now(UTC),
                )
            )
        self._open.clear()

        if not self._steps:
            return

        for data in sorted(self._steps, key=lambda s: s.step_number):
            self.session.add(
                ProvisioningTraceStep(
                    request_id=self.request_id,
                    campaign_id=self.campaign_id,
                    recipient_id=self.recipient_id,
                    brand_id=self.brand_id,
                    denomination=self.denomination,
                    step_number=data.step_number,
                    step_name=data.step_name,
                    status=data.status.value,
                    duration_ms=data.duration_ms,
                    details=data.details,
                    error_code=data.error_code,
                    error_message=data.error_message,
                    created_at=data.created_at,
                )
            )
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "provisioning_trace_persist_failed",
                request_id=self.request_id,
                steps=len(self._steps),
                error=str(e),
            )
            await self.session.rollback()


class TraceStore:
    """Read and retention operations over the provisioning trace log."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def get_trace(self, request_id: str) -> list[TraceStepData]:
        """All steps for one attempt, in step order."""
        result = await self.session.execute(
            select(ProvisioningTraceStep)
            .where(ProvisioningTraceStep.request_id == request_id)
            .order_by(ProvisioningTraceStep.step_number)
        )
        return [
            TraceStepData(
                step_number=row.step_number,
                step_name=row.step_name,
                status=TraceStatus(row.status),
                duration_ms=row.duration_ms,
                details=dict(row.details or {}),
                error_code=row.error_code,
                error_message=row.error_message,
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]

    async def cleanup_old_traces(self, retention_days: int) -> int:
        """
        Delete trace rows older than the retention window.

        Returns:
            Number of rows deleted
        """
        if retention_days < 1:
            raise ValueError(f"retention_days must be at least 1, got {retention_days}")

        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        result = await self.session.execute(
            delete(ProvisioningTraceStep).where(ProvisioningTraceStep.created_at < cutoff)
        )
        await self.session.commit()

        deleted = result.rowcount or 0
        logger.info(
            "provisioning_traces_cleaned",
            retention_days=retention_days,
            deleted_rows=deleted,
        )
        return deleted
