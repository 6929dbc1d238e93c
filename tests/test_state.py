"""Tests for observables, the append-only log and delayed dispatch."""

import threading
import time

from strumcoach.state import AppendOnlyLog, DelayedDispatcher, Observable


def test_observable_last_value_wins():
    obs = Observable(0)
    seen = []
    obs.subscribe(seen.append)
    obs.set(1)
    obs.set(2)
    assert obs.value == 2
    assert seen == [1, 2]


def test_unsubscribe():
    obs = Observable(None)
    seen = []
    unsubscribe = obs.subscribe(seen.append)
    obs.set("a")
    unsubscribe()
    unsubscribe()
    obs.set("b")
    assert seen == ["a"]


def test_failing_subscriber_does_not_block_others():
    obs = Observable(0)
    seen = []

    def broken(value):
        raise RuntimeError("boom")

    obs.subscribe(broken)
    obs.subscribe(seen.append)
    obs.set(5)
    assert seen == [5]
    assert obs.value == 5


def test_log_concurrent_appends():
    log = AppendOnlyLog()

    def worker(base):
        for i in range(1000):
            log.append(base + i)

    threads = [threading.Thread(target=worker, args=(k * 1000,)) for k in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(log) == 4000
    assert sorted(log.snapshot()) == list(range(4000))
    log.clear()
    assert log.snapshot() == []


def test_dispatcher_delays_and_orders():
    dispatcher = DelayedDispatcher(0.1)
    received = []
    started = time.monotonic()
    for i in range(5):
        dispatcher.submit(lambda i=i: received.append((i, time.monotonic() - started)))
    time.sleep(0.3)
    dispatcher.close()

    assert [i for i, _ in received] == [0, 1, 2, 3, 4]
    assert all(elapsed >= 0.09 for _, elapsed in received)


def test_dispatcher_close_cancels_pending():
    dispatcher = DelayedDispatcher(0.5)
    received = []
    dispatcher.submit(received.append, 1)
    dispatcher.close()
    dispatcher.close()
    dispatcher.submit(received.append, 2)
    time.sleep(0.6)
    assert received == []


def test_dispatcher_zero_delay():
    dispatcher = DelayedDispatcher()
    done = threading.Event()
    dispatcher.submit(done.set)
    assert done.wait(1.0)
    dispatcher.close()
