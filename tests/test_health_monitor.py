"""
Tests for provisioning health aggregation and stock classification.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st

from conftest import make_result
from giftcard_engine.db.models import ProvisioningTraceStep
from giftcard_engine.models.api import StockLevel
from giftcard_engine.models.domain import AttemptSummary
from giftcard_engine.services.health_monitor import (
    HealthMonitor,
    classify_stock,
    summarize_attempts,
)

attempts_strategy = st.lists(
    st.builds(
        AttemptSummary,
        request_id=st.uuids().map(str),
        failed=st.booleans(),
        duration_ms=st.integers(min_value=0, max_value=60_000),
        error_code=st.sampled_from([None, "GC-003", "GC-005", "GC-013"]),
    ),
    max_size=50,
)


class TestClassifyStock:
    """Tests for stock buckets."""

    @pytest.mark.parametrize(
        "available,expected",
        [
            (0, StockLevel.EMPTY),
            (1, StockLevel.CRITICAL),
            (9, StockLevel.CRITICAL),
            (10, StockLevel.LOW),
            (49, StockLevel.LOW),
            (50, StockLevel.HEALTHY),
            (5000, StockLevel.HEALTHY),
        ],
    )
    def test_default_thresholds(self, available: int, expected: StockLevel):
        """Boundaries sit at 50 and 10."""
        assert classify_stock(available) == expected

    def test_custom_thresholds(self):
        """Thresholds are configurable."""
        assert classify_stock(20, healthy_threshold=20, low_threshold=5) == StockLevel.HEALTHY
        assert classify_stock(4, healthy_threshold=20, low_threshold=5) == StockLevel.CRITICAL


class TestSummarizeAttempts:
    """Tests for the health aggregate."""

    @given(attempts=attempts_strategy)
    def test_counts_add_up(self, attempts: list[AttemptSummary]):
        """successful + failed == total and the rate stays in range."""
        snapshot = summarize_attempts(attempts, 24)

        assert snapshot.successful_attempts + snapshot.failed_attempts == snapshot.total_attempts
        assert 0 <= snapshot.success_rate <= 100

    def test_empty_window(self):
        """No attempts is a zero rate and no average."""
        snapshot = summarize_attempts([], 24)

        assert snapshot.total_attempts == 0
        assert snapshot.success_rate == 0.0
        assert snapshot.avg_duration_ms is None
        assert snapshot.top_error_code is None

    def test_top_error_code(self):
        """Most frequent failure code wins."""
        attempts = [
            AttemptSummary("a", False, 100, None),
            AttemptSummary("b", True, 200, "GC-003"),
            AttemptSummary("c", True, 300, "GC-003"),
            AttemptSummary("d", True, 400, "GC-005"),
        ]

        snapshot = summarize_attempts(attempts, 6)

        assert snapshot.window_hours == 6
        assert snapshot.success_rate == 25.0
        assert snapshot.avg_duration_ms == 250.0
        assert snapshot.top_error_code == "GC-003"
        assert snapshot.top_error_count == 2


class TestHealthMonitor:
    """Tests for database-backed queries."""

    @pytest.mark.asyncio
    async def test_attempt_without_completed_finalize_is_failed(self, db_session: AsyncMock):
        """Only a completed FINALIZE marks success."""
        db_session.execute = AsyncMock(
            return_value=make_result(
                rows=[("req-1", 120, 1, None), ("req-2", 80, 0, "GC-003"), ("req-3", 40, None, None)]
            )
        )

        attempts = await HealthMonitor(db_session).get_attempts(24)

        assert [a.failed for a in attempts] == [False, True, True]
        assert attempts[1].error_code == "GC-003"

    @pytest.mark.asyncio
    async def test_get_health(self, db_session: AsyncMock):
        """Health is the summary of the window's attempts."""
        db_session.execute = AsyncMock(
            return_value=make_result(rows=[("req-1", 100, 1, None), ("req-2", 300, 0, "GC-005")])
        )

        snapshot = await HealthMonitor(db_session).get_health(12)

        assert snapshot.total_attempts == 2
        assert snapshot.success_rate == 50.0
        assert snapshot.top_error_code == "GC-005"

    @pytest.mark.asyncio
    async def test_error_stats(self, db_session: AsyncMock):
        """Rows map to typed stats."""
        now = datetime.now(UTC)
        db_session.execute = AsyncMock(
            return_value=make_result(rows=[("GC-003", 7, now, 2), ("GC-005", 1, now, 1)])
        )

        stats = await HealthMonitor(db_session).get_error_stats(24)

        assert stats[0].error_code == "GC-003"
        assert stats[0].occurrences == 7
        assert stats[0].affected_campaigns == 2

    @pytest.mark.asyncio
    async def test_recent_failures_prefer_failing_step(self, db_session: AsyncMock):
        """An attempt is reported by the step that failed, not by FINALIZE."""
        now = datetime.now(UTC)

        def step(request_id: str, name: str, offset: int) -> MagicMock:
            row = MagicMock(spec=ProvisioningTraceStep)
            row.request_id = request_id
            row.step_name = name
            row.campaign_id = uuid4()
            row.recipient_id = uuid4()
            row.brand_id = uuid4()
            row.denomination = Decimal("25.00")
            row.error_code = "GC-005"
            row.error_message = "timeout"
            row.created_at = now - timedelta(seconds=offset)
            return row

        rows = [
            step("req-1", "FINALIZE", 0),
            step("req-1", "EXTERNAL_PURCHASE", 1),
            step("req-2", "FINALIZE", 10),
        ]
        db_session.execute = AsyncMock(return_value=make_result(scalars=rows))

        failures = await HealthMonitor(db_session).get_recent_failures(limit=10)

        assert [(f.request_id, f.step_name) for f in failures] == [
            ("req-1", "EXTERNAL_PURCHASE"),
            ("req-2", "FINALIZE"),
        ]

    @pytest.mark.asyncio
    async def test_inventory_levels(self, db_session: AsyncMock):
        """Levels carry their stock classification."""
        brand_id = uuid4()
        db_session.execute = AsyncMock(
            return_value=make_result(
                rows=[
                    (brand_id, "Amazon", Decimal("25.00"), 75),
                    (brand_id, "Amazon", Decimal("50.00"), 3),
                    (brand_id, "Amazon", Decimal("100.00"), 0),
                ]
            )
        )

        levels = await HealthMonitor(db_session).get_inventory_levels()

        assert [level.level for level in levels] == [
            StockLevel.HEALTHY,
            StockLevel.CRITICAL,
            StockLevel.EMPTY,
        ]
