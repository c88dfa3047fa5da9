import pytest

from errors import UnknownService
from estimator import WaitEstimator
from models import TicketStatus


def close_counters(queue, *counter_ids):
    for counter_id in counter_ids:
        queue.counters.toggle(counter_id)


def test_empty_queue_estimates_zero_everywhere(queue):
    estimator = WaitEstimator(queue)
    assert estimator.compute() == {"srv_1": 0, "srv_2": 0, "srv_3": 0, "srv_4": 0}


def test_waiting_tickets_add_full_durations(queue):
    close_counters(queue, 2, 3, 4)
    queue.join("a", "srv_1")
    queue.join("b", "srv_1")
    queue.join("c", "srv_3")

    estimates = WaitEstimator(queue).compute()

    assert set(estimates.values()) == {25}


def test_serving_ticket_contributes_remaining_time(queue, clock):
    queue.join("a", "srv_1")
    queue.join("b", "srv_2")
    queue.call_next(1)
    clock.advance(minutes=2)
    estimator = WaitEstimator(queue)

    # 3 minutes left on srv_1 plus 3 waiting on srv_2, over four counters.
    assert estimator.compute()["srv_1"] == 2

    close_counters(queue, 2, 3, 4)
    assert estimator.compute()["srv_1"] == 6


def test_overdue_ticket_counts_minimum_floor(queue, clock):
    close_counters(queue, 2, 3, 4)
    queue.join("a", "srv_2")
    queue.call_next(1)
    clock.advance(minutes=10)

    assert WaitEstimator(queue).compute()["srv_2"] == 1


def test_all_counters_closed_divides_by_one(queue):
    close_counters(queue, 1, 2, 3, 4)
    queue.join("a", "srv_3")

    assert WaitEstimator(queue).compute()["srv_1"] == 15


def test_history_replaces_default_duration(queue, clock):
    close_counters(queue, 2, 3, 4)
    queue.join("a", "srv_1")
    queue.call_next(1)
    clock.advance(minutes=12)
    queue.finish_current(1, TicketStatus.completed)
    queue.join("b", "srv_1")

    assert WaitEstimator(queue).compute()["srv_1"] == 5
    assert WaitEstimator(queue, use_history=True).compute()["srv_1"] == 12


def test_estimates_are_cached_until_recompute(queue):
    estimator = WaitEstimator(queue)
    assert estimator.estimates["srv_1"] == 0

    queue.join("a", "srv_1")
    assert estimator.estimates["srv_1"] == 0
    estimator.recompute()
    assert estimator.estimates["srv_1"] == 2


def test_estimate_for_new_service_recomputes(queue):
    estimator = WaitEstimator(queue)
    estimator.recompute()
    service = queue.catalog.create(name="Loans", prefix="L", service_id="srv_loans")

    assert estimator.estimate(service.id) == 0


def test_estimate_for_unknown_service(queue):
    with pytest.raises(UnknownService):
        WaitEstimator(queue).estimate("srv_missing")


def test_partial_minutes_round_up(queue, clock):
    close_counters(queue, 2, 3, 4)
    queue.join("a", "srv_1")
    queue.call_next(1)
    clock.advance(seconds=30)

    # 4.5 minutes left on the only open counter.
    assert WaitEstimator(queue).compute()["srv_1"] == 5
