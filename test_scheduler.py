import asyncio
from datetime import date

from sqlalchemy.exc import OperationalError

from scheduler import DailyResetScheduler, PeriodicTask


class RecordingReset:
    def __init__(self, failures=0):
        self.calls = 0
        self.failures = failures

    def __call__(self):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise OperationalError("DELETE FROM ticket", {}, Exception("database is locked"))


def test_reset_runs_once_per_day(queue, clock):
    reset = RecordingReset()
    scheduler = DailyResetScheduler(queue, reset)

    assert scheduler.tick() is True
    assert scheduler.tick() is False
    assert reset.calls == 1
    assert scheduler.last_reset_date() == date(2024, 3, 4)

    clock.advance(days=1)
    assert scheduler.tick() is True
    assert scheduler.tick() is False
    assert reset.calls == 2


def test_last_reset_date_survives_a_restart(queue, clock):
    DailyResetScheduler(queue, RecordingReset()).tick()

    reset = RecordingReset()
    assert DailyResetScheduler(queue, reset).tick() is False
    assert reset.calls == 0


def test_failed_reset_is_retried_on_next_tick(queue):
    reset = RecordingReset(failures=1)
    scheduler = DailyResetScheduler(queue, reset)

    assert scheduler.tick() is False
    assert scheduler.last_reset_date() is None

    assert scheduler.tick() is True
    assert reset.calls == 2
    assert scheduler.last_reset_date() == date(2024, 3, 4)


def test_default_reset_wipes_queue(queue, clock):
    scheduler = DailyResetScheduler(queue)
    scheduler.tick()
    queue.join("Alice", "srv_1")
    queue.call_next(1)
    queue.counters.assign_staff(1, "staff-1")

    clock.advance(days=1)
    assert scheduler.tick() is True

    assert queue.tickets.list_all() == []
    counter = queue.counters.get(1)
    assert counter.current_ticket_id is None
    assert counter.assigned_staff_id is None


def test_periodic_task_runs_until_stopped():
    calls = []

    async def scenario():
        task = PeriodicTask("test", lambda: calls.append(1), interval=0.01)
        task.start()
        await asyncio.sleep(0.1)
        assert task.running
        await task.stop()
        assert not task.running

    asyncio.run(scenario())
    assert len(calls) >= 2


def test_periodic_task_survives_failures():
    calls = []

    def flaky():
        calls.append(1)
        raise RuntimeError("boom")

    async def scenario():
        task = PeriodicTask("flaky", flaky, interval=0.01)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

    asyncio.run(scenario())
    assert len(calls) >= 2


def test_stopping_a_task_that_never_started():
    asyncio.run(PeriodicTask("idle", lambda: None, interval=1).stop())
