"""Concurrent joins and calls against a file-backed database."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from threading import Barrier

import pytest
from sqlmodel import SQLModel

from clock import FrozenClock
from database import create_db_engine, init_db
from feed import ChangeFeed
from services import CallOutcome, QueueService

WORKERS = 12


@pytest.fixture
def shared_queue(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    init_db(engine, total_counters=8)
    # Every lost insert means another ticket took that number, so WORKERS
    # attempts always suffice.
    queue = QueueService(
        engine,
        clock=FrozenClock(datetime(2024, 3, 4, 10, 0)),
        feed=ChangeFeed(),
        allocation_attempts=WORKERS,
    )
    yield queue
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


def run_together(count, func):
    barrier = Barrier(count)

    def task(i):
        barrier.wait()
        return func(i)

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(task, range(count)))


def test_concurrent_joins_get_contiguous_numbers(shared_queue):
    tickets = run_together(WORKERS, lambda i: shared_queue.join(f"customer {i}", "srv_1"))

    assert not shared_queue.degraded
    assert sorted(t.number for t in tickets) == [f"A{n:03d}" for n in range(1, WORKERS + 1)]


def test_concurrent_calls_claim_a_single_ticket_once(shared_queue):
    ticket = shared_queue.join("Alice", "srv_1")

    results = run_together(8, lambda i: shared_queue.call_next(i + 1))

    called = [r for r in results if r.outcome == CallOutcome.called]
    assert len(called) == 1
    assert called[0].ticket.id == ticket.id
    assert all(
        r.outcome in (CallOutcome.none_waiting, CallOutcome.no_ticket_available)
        for r in results if r is not called[0]
    )
    holders = [c.id for c in shared_queue.counters.list() if c.current_ticket_id == ticket.id]
    assert holders == [called[0].counter.id]
