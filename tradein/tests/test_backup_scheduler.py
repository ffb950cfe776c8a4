"""Unit tests for the scheduler handle."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradein.models.backup_schemas import BackupConfig, TickOutcome, TickStatus
from tradein.workers.backup_scheduler import SchedulerHandle


def mock_service(enabled: bool = True, frequency: str = "hourly"):
    service = MagicMock()
    service.get_config = AsyncMock(return_value=BackupConfig(
        auto_backup_enabled=enabled, incremental_backup_frequency=frequency
    ))
    service.run_tick = AsyncMock(return_value=TickOutcome(status=TickStatus.SKIPPED, message="waiting"))
    return service


async def wait_for_ticks(handle: SchedulerHandle, count: int):
    for _ in range(200):
        if handle.ticks >= count:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"expected {count} ticks, saw {handle.ticks}")


class TestSchedulerHandle:

    @pytest.mark.asyncio
    async def test_disabled_config_does_not_start(self):
        handle = SchedulerHandle(mock_service(enabled=False))

        started = await handle.start()

        assert started is False
        assert handle.state == "stopped"

    @pytest.mark.asyncio
    async def test_ticks_immediately_then_on_interval(self):
        service = mock_service()
        handle = SchedulerHandle(service, interval=timedelta(milliseconds=20))

        assert await handle.start()
        assert handle.state == "running"
        await wait_for_ticks(handle, 3)
        await handle.stop()

        assert handle.state == "stopped"
        service.run_tick.assert_awaited_with(trigger="system:scheduler")
        assert handle.last_outcome.status == TickStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_interval_follows_incremental_frequency(self):
        handle = SchedulerHandle(mock_service(frequency="every4hours"))

        await handle.start()
        await wait_for_ticks(handle, 1)
        await handle.stop()

        assert handle.interval == timedelta(hours=4)
        assert handle.ticks == 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        handle = SchedulerHandle(mock_service(), interval=timedelta(hours=1))
        await handle.stop()

        await handle.start()
        await handle.stop()
        await handle.stop()

        assert handle.state == "stopped"

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_loop(self):
        service = mock_service()
        handle = SchedulerHandle(service, interval=timedelta(hours=1))

        await handle.start()
        await handle.start()
        await wait_for_ticks(handle, 1)
        await asyncio.sleep(0.02)
        await handle.stop()

        assert service.run_tick.await_count == 1

    @pytest.mark.asyncio
    async def test_restart_picks_up_disabled_config(self):
        service = mock_service()
        handle = SchedulerHandle(service, interval=timedelta(hours=1))
        await handle.start()
        await wait_for_ticks(handle, 1)

        service.get_config.return_value = BackupConfig(auto_backup_enabled=False)
        running = await handle.restart()

        assert running is False
        assert handle.state == "stopped"

    @pytest.mark.asyncio
    async def test_tick_exception_does_not_kill_loop(self):
        service = mock_service()
        service.run_tick.side_effect = [
            RuntimeError("unexpected"),
            TickOutcome(status=TickStatus.RAN, message="ok"),
            TickOutcome(status=TickStatus.RAN, message="ok"),
        ]
        handle = SchedulerHandle(service, interval=timedelta(milliseconds=10))

        await handle.start()
        await wait_for_ticks(handle, 1)
        await handle.stop()

        assert handle.last_outcome.status == TickStatus.RAN


class TestSchedulerWithService:

    @pytest.mark.asyncio
    async def test_first_tick_creates_full_backup(self, service, fake_db):
        await service.update_config({"auto_backup_enabled": True})
        handle = SchedulerHandle(service, interval=timedelta(hours=1))

        await handle.start()
        await wait_for_ticks(handle, 1)
        await handle.stop()

        assert handle.last_outcome.status == TickStatus.RAN
        assert fake_db["backups"].docs[0]["type"] == "full"
