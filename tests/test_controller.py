"""
Tests for the SessionController: backgrounding, restore, multi-step
reconciliation, cancellation and failure handling.
"""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest

from stepkeeper.clock import ManualClock
from stepkeeper.config import RecoverySettings
from stepkeeper.core.controller import SessionController, SessionState
from stepkeeper.core.reminders import InMemoryReminderScheduler
from stepkeeper.errors import PersistenceError
from stepkeeper.session.lifecycle import LifecycleObserver
from stepkeeper.session.models import LifecycleState, ReminderKind, Step
from stepkeeper.session.snapshot_store import JsonFileSnapshotStore

T0 = 1_700_000_000_000
PROGRAM = "hiit-1"


def _new_controller(store, clock, settings):
    return SessionController(
        store=store,
        scheduler=InMemoryReminderScheduler(),
        observer=LifecycleObserver(),
        clock=clock,
        settings=settings,
    )


class TestBackgrounding:
    @pytest.mark.asyncio
    async def test_background_saves_snapshot_and_arms_reminders(
        self, controller, observer, store, scheduler, clock, steps
    ):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 10_000)

        observer.notify(LifecycleState.BACKGROUNDED)
        await controller.drain()

        assert controller.state is SessionState.BACKGROUNDED
        saved = await store.load()
        assert saved.program_id == PROGRAM
        assert saved.current_step_index == 0
        assert saved.remaining_ms == 50_000
        assert saved.backgrounded_at == T0 + 10_000

        reminders = scheduler.list_scheduled()
        assert [(r.kind, r.fire_at) for r in reminders] == [
            (ReminderKind.NEXT_UP_WARNING, T0 + 55_000),
            (ReminderKind.STEP_COMPLETE, T0 + 60_000),
        ]
        assert reminders[0].payload.body == "Next up: Rest"
        assert len(controller.armed_reminders) == 2

    @pytest.mark.asyncio
    async def test_inactive_then_backgrounded_saves_once(
        self, controller, observer, store, clock, steps
    ):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 5_000)

        with patch.object(store, "save", AsyncMock(wraps=store.save)) as save:
            observer.notify(LifecycleState.INACTIVE)
            observer.notify(LifecycleState.BACKGROUNDED)
            await controller.drain()

        assert save.call_count == 1
        assert controller.state is SessionState.BACKGROUNDED

    @pytest.mark.asyncio
    async def test_no_next_up_warning_on_last_step(
        self, controller, observer, scheduler, clock, steps
    ):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 100_000)
        controller.tick()
        assert controller.get_current_step_index() == 2

        observer.notify(LifecycleState.BACKGROUNDED)
        await controller.drain()

        kinds = [r.kind for r in scheduler.list_scheduled()]
        assert kinds == [ReminderKind.STEP_COMPLETE]
        assert "last step" in scheduler.list_scheduled()[0].payload.body

    @pytest.mark.asyncio
    async def test_next_up_skipped_when_inside_warning_window(
        self, controller, observer, scheduler, clock, steps
    ):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 57_000)

        observer.notify(LifecycleState.BACKGROUNDED)
        await controller.drain()

        assert [r.kind for r in scheduler.list_scheduled()] == [ReminderKind.STEP_COMPLETE]

    @pytest.mark.asyncio
    async def test_idle_controller_ignores_lifecycle(self, controller, observer, store):
        observer.notify(LifecycleState.BACKGROUNDED)
        observer.notify(LifecycleState.ACTIVE)
        await controller.drain()

        assert controller.state is SessionState.IDLE
        assert await store.load() is None

    def test_background_returns_promptly_when_save_fails(
        self, store, scheduler, observer, clock, steps, tmp_path
    ):
        controller = SessionController(
            store=store,
            scheduler=scheduler,
            observer=observer,
            clock=clock,
            settings=RecoverySettings(data_dir=tmp_path, effect_backoff_seconds=0.5),
        )
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 10_000)

        failing = AsyncMock(side_effect=PersistenceError("disk full"))
        with patch.object(store, "save", failing):
            started = time.monotonic()
            observer.notify(LifecycleState.BACKGROUNDED)
            elapsed = time.monotonic() - started

        assert elapsed < 0.4
        assert failing.call_count == 1
        assert controller.state is SessionState.BACKGROUNDED
        assert scheduler.active_count == 2


class TestRestore:
    async def _background_at(self, controller, observer, clock, steps, offset):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + offset)
        observer.notify(LifecycleState.BACKGROUNDED)
        await controller.drain()

    async def _resume_at(self, controller, observer, clock, offset):
        clock.set(T0 + offset)
        observer.notify(LifecycleState.ACTIVE)
        await controller.drain()

    @pytest.mark.asyncio
    async def test_resume_within_step(self, controller, observer, scheduler, clock, steps):
        advances = []
        controller.on_step_advance(advances.append)
        await self._background_at(controller, observer, clock, steps, 10_000)

        await self._resume_at(controller, observer, clock, 50_000)

        assert controller.state is SessionState.RUNNING
        assert controller.get_current_step_index() == 0
        assert controller.get_remaining_ms() == 10_000
        assert advances == []
        assert scheduler.active_count == 0
        assert controller.armed_reminders == []
        assert controller.snapshot.backgrounded_at is None

    @pytest.mark.asyncio
    async def test_resume_after_step_ended(self, controller, observer, scheduler, clock, steps):
        advances = []
        controller.on_step_advance(advances.append)
        await self._background_at(controller, observer, clock, steps, 10_000)

        await self._resume_at(controller, observer, clock, 70_000)

        assert controller.get_current_step_index() == 1
        assert controller.get_remaining_ms() == 20_000
        assert len(advances) == 1
        assert advances[0].recovered is True
        assert advances[0].result.completed_at == T0 + 60_000
        assert advances[0].result.metrics.recovered is True
        assert scheduler.active_count == 0

    @pytest.mark.asyncio
    async def test_resume_across_several_steps(self, controller, observer, clock, steps):
        advances = []
        controller.on_step_advance(advances.append)
        await self._background_at(controller, observer, clock, steps, 10_000)

        await self._resume_at(controller, observer, clock, 100_000)

        assert controller.get_current_step_index() == 2
        assert controller.get_remaining_ms() == 35_000
        assert [(a.previous_index, a.current_index) for a in advances] == [(0, 1), (1, 2)]
        assert all(a.recovered for a in advances)
        snapshot = controller.snapshot
        assert snapshot.step_start_time == T0 + 90_000
        assert snapshot.total_elapsed_ms == 90_000
        assert len(snapshot.step_results) == 2

    @pytest.mark.asyncio
    async def test_resume_after_whole_session_finished(
        self, controller, observer, store, scheduler, clock, steps
    ):
        summaries = []
        controller.on_session_complete(summaries.append)
        await self._background_at(controller, observer, clock, steps, 10_000)

        await self._resume_at(controller, observer, clock, 200_000)

        assert controller.state is SessionState.COMPLETED
        assert controller.get_remaining_ms() == 0
        assert len(summaries) == 1
        assert summaries[0].total_elapsed_ms == 135_000
        assert summaries[0].completed_at == T0 + 135_000
        assert len(summaries[0].step_results) == 3
        assert await store.load() is None
        assert scheduler.active_count == 0

    @pytest.mark.asyncio
    async def test_background_and_back_before_effects_run(
        self, controller, observer, scheduler, clock, steps
    ):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 10_000)
        observer.notify(LifecycleState.BACKGROUNDED)
        clock.set(T0 + 12_000)
        observer.notify(LifecycleState.ACTIVE)

        await controller.drain()

        assert controller.state is SessionState.RUNNING
        assert controller.get_remaining_ms() == 48_000
        assert scheduler.active_count == 0
        assert controller.armed_reminders == []

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_on_resume_starts_fresh(
        self, controller, observer, store, scheduler, clock, steps
    ):
        await self._background_at(controller, observer, clock, steps, 10_000)
        store.put_raw("{not json")

        await self._resume_at(controller, observer, clock, 20_000)

        assert controller.state is SessionState.IDLE
        assert controller.snapshot is None
        assert not store.has_snapshot
        assert scheduler.active_count == 0

    @pytest.mark.asyncio
    async def test_stale_snapshot_is_discarded(self, controller, observer, store, clock, settings, steps):
        await self._background_at(controller, observer, clock, steps, 10_000)

        await self._resume_at(controller, observer, clock, 10_000 + settings.stale_after_ms + 1_000)

        assert controller.state is SessionState.IDLE
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_save_failure_is_retried_then_memory_is_used(
        self, controller, observer, store, clock, steps
    ):
        failing = AsyncMock(side_effect=PersistenceError("disk full"))
        with patch.object(store, "save", failing):
            await self._background_at(controller, observer, clock, steps, 10_000)

        assert failing.call_count == 4
        assert await store.load() is None

        await self._resume_at(controller, observer, clock, 50_000)

        assert controller.state is SessionState.RUNNING
        assert controller.get_remaining_ms() == 10_000

    @pytest.mark.asyncio
    async def test_load_failure_falls_back_to_memory(
        self, controller, observer, store, clock, steps
    ):
        await self._background_at(controller, observer, clock, steps, 10_000)

        failing = AsyncMock(side_effect=PersistenceError("storage unavailable"))
        with patch.object(store, "load", failing):
            await self._resume_at(controller, observer, clock, 70_000)

        assert failing.call_count == 4
        assert controller.state is SessionState.RUNNING
        assert controller.get_current_step_index() == 1
        assert controller.get_remaining_ms() == 20_000

    @pytest.mark.asyncio
    async def test_older_stored_snapshot_does_not_roll_back_session(
        self, controller, observer, store, clock, steps
    ):
        await self._background_at(controller, observer, clock, steps, 10_000)
        await self._resume_at(controller, observer, clock, 20_000)
        clock.set(T0 + 25_000)
        assert controller.skip_step() is True

        # This save never lands, leaving the first background's record in storage.
        with patch.object(store, "save", AsyncMock(side_effect=PersistenceError("disk full"))):
            clock.set(T0 + 30_000)
            observer.notify(LifecycleState.BACKGROUNDED)
            await controller.drain()
        assert (await store.load()).current_step_index == 0

        await self._resume_at(controller, observer, clock, 35_000)

        assert controller.state is SessionState.RUNNING
        assert controller.get_current_step_index() == 1
        assert controller.get_remaining_ms() == 20_000
        results = controller.snapshot.step_results
        assert len(results) == 1
        assert results[0].metrics.skipped is True


class TestPause:
    def test_pause_freezes_remaining_time(self, controller, clock, steps):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 10_000)

        assert controller.pause() is True
        assert controller.get_remaining_ms() == 50_000

        clock.set(T0 + 40_000)
        controller.tick()
        assert controller.get_remaining_ms() == 50_000
        assert controller.state is SessionState.PAUSED

        assert controller.resume() is True
        assert controller.get_remaining_ms() == 50_000
        assert controller.snapshot.paused_duration_ms == 30_000

        clock.set(T0 + 50_000)
        assert controller.get_remaining_ms() == 40_000

    def test_pause_and_resume_reject_wrong_state(self, controller, steps):
        assert controller.pause() is False
        assert controller.resume() is False
        controller.start_session(PROGRAM, steps)
        assert controller.resume() is False

    @pytest.mark.asyncio
    async def test_paused_session_stays_paused_across_background(
        self, controller, observer, store, scheduler, clock, steps
    ):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 10_000)
        controller.pause()

        clock.set(T0 + 20_000)
        observer.notify(LifecycleState.BACKGROUNDED)
        await controller.drain()

        saved = await store.load()
        assert saved.paused_duration_ms == 10_000
        assert scheduler.active_count == 0

        clock.set(T0 + 100_000)
        observer.notify(LifecycleState.ACTIVE)
        await controller.drain()

        assert controller.state is SessionState.PAUSED
        assert controller.get_current_step_index() == 0
        assert controller.get_remaining_ms() == 50_000

        controller.resume()
        clock.set(T0 + 110_000)
        assert controller.get_remaining_ms() == 40_000


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_while_backgrounded_clears_everything(
        self, controller, observer, store, scheduler, clock, settings, steps
    ):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 10_000)
        observer.notify(LifecycleState.BACKGROUNDED)
        await controller.drain()

        controller.cancel()
        await controller.drain()

        assert controller.state is SessionState.CANCELLED
        assert controller.snapshot is None
        assert await store.load() is None
        assert scheduler.active_count == 0

        fresh = _new_controller(store, clock, settings)
        assert await fresh.recover_session(PROGRAM, steps) is False
        assert fresh.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_failed_clear_cannot_resurrect_session(
        self, controller, observer, store, clock, steps
    ):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 10_000)
        observer.notify(LifecycleState.BACKGROUNDED)
        await controller.drain()

        with patch.object(store, "clear", AsyncMock(side_effect=PersistenceError("locked"))):
            controller.cancel()
            await controller.drain()
            assert store.has_snapshot

            clock.set(T0 + 20_000)
            assert await controller.recover_session(PROGRAM, steps) is False
            await controller.drain()

        assert controller.state is SessionState.CANCELLED

    @pytest.mark.asyncio
    async def test_failed_clear_is_honoured_after_relaunch(
        self, controller, observer, store, clock, settings, steps
    ):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 10_000)
        observer.notify(LifecycleState.BACKGROUNDED)
        await controller.drain()

        with patch.object(store, "clear", AsyncMock(side_effect=PersistenceError("locked"))):
            controller.cancel()
            await controller.drain()

        marker = await store.load()
        assert marker.cancelled_at == T0 + 10_000

        clock.set(T0 + 20_000)
        relaunched = _new_controller(store, clock, settings)
        assert await relaunched.recover_session(PROGRAM, steps) is False
        await relaunched.drain()

        assert relaunched.state is SessionState.IDLE
        assert not store.has_snapshot

    @pytest.mark.asyncio
    async def test_lifecycle_after_cancel_is_ignored(
        self, controller, observer, store, clock, steps
    ):
        controller.start_session(PROGRAM, steps)
        controller.cancel()
        observer.notify(LifecycleState.BACKGROUNDED)
        observer.notify(LifecycleState.ACTIVE)
        await controller.drain()

        assert controller.state is SessionState.CANCELLED
        assert await store.load() is None


class TestColdRecovery:
    @pytest.mark.asyncio
    async def test_recovers_persisted_session(
        self, store, clock, settings, steps, make_snapshot
    ):
        await store.save(make_snapshot(backgrounded_at=T0 + 10_000, remaining_ms=50_000))
        clock.set(T0 + 30_000)
        controller = _new_controller(store, clock, settings)

        assert await controller.recover_session(PROGRAM, steps) is True

        assert controller.state is SessionState.RUNNING
        assert controller.get_current_step_index() == 0
        assert controller.get_remaining_ms() == 30_000

    @pytest.mark.asyncio
    async def test_corrupt_record_starts_fresh(self, store, clock, settings, steps):
        store.put_raw("{not json")
        controller = _new_controller(store, clock, settings)

        assert await controller.recover_session(PROGRAM, steps) is False
        await controller.drain()

        assert controller.state is SessionState.IDLE
        assert not store.has_snapshot

    @pytest.mark.asyncio
    async def test_other_program_is_discarded(self, store, clock, settings, steps, make_snapshot):
        await store.save(make_snapshot(program_id="yoga", backgrounded_at=T0))
        controller = _new_controller(store, clock, settings)

        assert await controller.recover_session(PROGRAM, steps) is False
        await controller.drain()

        assert controller.state is SessionState.IDLE
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_nothing_to_recover(self, controller, steps):
        assert await controller.recover_session(PROGRAM, steps) is False
        assert controller.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_ignored_while_session_is_live(self, controller, store, steps, make_snapshot):
        await store.save(make_snapshot(backgrounded_at=T0))
        controller.start_session(PROGRAM, steps)
        assert await controller.recover_session(PROGRAM, steps) is False
        assert controller.state is SessionState.RUNNING

    @pytest.mark.asyncio
    async def test_round_trip_through_json_file(self, tmp_path, clock, settings, steps):
        observer = LifecycleObserver()
        first = SessionController(
            store=JsonFileSnapshotStore(base_dir=str(tmp_path)),
            scheduler=InMemoryReminderScheduler(),
            observer=observer,
            clock=clock,
            settings=settings,
        )
        first.start_session(PROGRAM, steps)
        clock.set(T0 + 10_000)
        observer.notify(LifecycleState.BACKGROUNDED)
        await first.drain()
        assert (tmp_path / "training_session.json").exists()

        later = ManualClock(start_ms=T0 + 70_000)
        second = _new_controller(JsonFileSnapshotStore(base_dir=str(tmp_path)), later, settings)

        assert await second.recover_session(PROGRAM, steps) is True
        assert second.get_current_step_index() == 1
        assert second.get_remaining_ms() == 20_000


class TestProgression:
    def test_start_rejects_invalid_program(self, controller):
        with pytest.raises(ValueError):
            controller.start_session(PROGRAM, [])
        with pytest.raises(ValueError, match="invalid duration"):
            controller.start_session(PROGRAM, [Step(id="a", title="A", duration_ms=0)])
        assert controller.state is SessionState.IDLE

    def test_tick_advances_and_completes(self, controller, clock, steps):
        advances = []
        summaries = []
        controller.on_step_advance(advances.append)
        controller.on_session_complete(summaries.append)
        controller.start_session(PROGRAM, steps)

        clock.set(T0 + 60_000)
        controller.tick()
        assert controller.get_current_step_index() == 1
        assert advances[0].recovered is False
        assert advances[0].result.metrics.kind == "exercise"

        clock.set(T0 + 135_000)
        controller.tick()
        assert controller.state is SessionState.COMPLETED
        assert summaries[0].total_elapsed_ms == 135_000
        assert advances[1].result.metrics.kind == "rest"

    def test_skip_step_records_partial_time(self, controller, clock, steps):
        advances = []
        controller.on_step_advance(advances.append)
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 20_000)

        assert controller.skip_step() is True

        assert controller.get_current_step_index() == 1
        assert controller.get_remaining_ms() == 30_000
        result = advances[0].result
        assert result.metrics.skipped is True
        assert result.metrics.elapsed_ms == 20_000
        assert controller.snapshot.step_start_time == T0 + 20_000

    def test_progress_shows_next_up_banner(self, controller, clock, steps):
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 56_000)

        progress = controller.progress()

        assert progress.step_index == 0
        assert progress.step_count == 3
        assert progress.remaining_ms == 4_000
        assert progress.remaining_label == "00:04"
        assert progress.show_next_up is True
        assert progress.next_step.id == "rest-1"
        assert progress.step_fraction == pytest.approx(56 / 60)

    def test_progress_without_session(self, controller):
        assert controller.progress() is None
        assert controller.get_current_step_index() == 0
        assert controller.get_remaining_ms() == 0

    def test_failing_listener_does_not_block_others(self, controller, clock, steps):
        seen = []

        def broken(event):
            raise RuntimeError("ui crashed")

        controller.on_step_advance(broken)
        controller.on_step_advance(seen.append)
        controller.start_session(PROGRAM, steps)

        clock.set(T0 + 61_000)
        controller.tick()

        assert len(seen) == 1
        assert controller.get_current_step_index() == 1

    def test_unsubscribed_listener_is_not_called(self, controller, clock, steps):
        seen = []
        unsubscribe = controller.on_step_advance(seen.append)
        unsubscribe()
        unsubscribe()
        controller.start_session(PROGRAM, steps)

        clock.set(T0 + 61_000)
        controller.tick()

        assert seen == []

    @pytest.mark.asyncio
    async def test_ticker_stops_when_session_completes(self, controller, clock, steps, settings):
        settings.tick_interval_seconds = 0.001
        controller.start_session(PROGRAM, steps)
        clock.set(T0 + 200_000)

        controller.start_ticking()
        for _ in range(50):
            if controller.state is SessionState.COMPLETED:
                break
            await controller.drain()
            await asyncio.sleep(0.002)

        assert controller.state is SessionState.COMPLETED
        await controller.close()
