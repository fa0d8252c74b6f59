"""Tests for the periodic retry sweep runner."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from conftest import FakeClock, RecordingEndpoint

from courier.models import DeliveryStatus
from courier.service import CourierService
from courier.webhooks import SweepRunner


def mock_coordinator(**kwargs) -> MagicMock:
    coordinator = MagicMock()
    coordinator.run_due_retries = AsyncMock(**kwargs)
    return coordinator


class TestSweepRunner:
    """Tests for SweepRunner."""

    async def test_run_once_returns_processed(self):
        runner = SweepRunner(mock_coordinator(return_value=3))
        assert await runner.run_once() == 3

    async def test_run_once_survives_errors(self):
        """A failing run is logged, not raised."""
        runner = SweepRunner(mock_coordinator(side_effect=RuntimeError("qdrant down")))
        assert await runner.run_once() == 0

    async def test_start_and_stop(self):
        coordinator = mock_coordinator(return_value=0)
        runner = SweepRunner(coordinator, interval_seconds=0.01)

        runner.start()
        assert runner.running
        await asyncio.sleep(0.05)
        await runner.stop()

        assert not runner.running
        assert coordinator.run_due_retries.await_count >= 2

    async def test_start_twice_keeps_one_task(self):
        runner = SweepRunner(mock_coordinator(return_value=0), interval_seconds=10)

        runner.start()
        task = runner._task
        runner.start()
        assert runner._task is task

        await runner.stop()

    async def test_loop_continues_after_failure(self):
        coordinator = mock_coordinator(side_effect=[RuntimeError("boom"), 1, 0, 0, 0, 0, 0, 0])
        runner = SweepRunner(coordinator, interval_seconds=0.01)

        runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()

        assert coordinator.run_due_retries.await_count >= 2

    async def test_stop_without_start(self):
        runner = SweepRunner(mock_coordinator(return_value=0))
        await runner.stop()
        assert not runner.running

    async def test_stop_wakes_sleeping_loop(self):
        """stop() returns promptly even with a long interval."""
        runner = SweepRunner(mock_coordinator(return_value=0), interval_seconds=3600)

        runner.start()
        await asyncio.sleep(0.01)
        await asyncio.wait_for(runner.stop(), timeout=1)

    async def test_drives_real_retries(
        self, service: CourierService, endpoint: RecordingEndpoint, clock: FakeClock
    ):
        endpoint.status_code = 500
        await service.registry.create(
            "org_1",
            name="CRM",
            url="https://crm.example.com/hooks",
            resources=["students"],
            events=["insert"],
        )
        [delivery_id] = await service.ingest("org_1", "students", "insert", record={"id": "s"})
        endpoint.status_code = 200
        clock.advance(seconds=1)

        runner = service.sweep_runner()
        assert await runner.run_once() == 1

        detail = await service.get_delivery("org_1", delivery_id)
        assert detail.delivery.status == DeliveryStatus.SUCCESS
