"""Tests for the Async Dispatch Bridge."""

import threading
import time

from catalyst.workflow.dispatch import FAILED, OK, TIMEOUT, DispatchBridge


class TestRun:
    """Fan-out with a join barrier."""

    def test_returns_every_outcome_in_task_order(self):
        outcomes = DispatchBridge().run({"b": lambda: 2, "a": lambda: 1})
        assert list(outcomes) == ["b", "a"]
        assert outcomes["a"].status == OK
        assert outcomes["a"].value == 1

    def test_empty_tasks(self):
        assert DispatchBridge().run({}) == {}

    def test_failure_does_not_cancel_siblings(self):
        def boom():
            raise RuntimeError("agent crashed")

        outcomes = DispatchBridge().run({"bad": boom, "good": lambda: "done"})
        assert outcomes["bad"].status == FAILED
        assert "RuntimeError: agent crashed" in outcomes["bad"].error
        assert outcomes["good"].ok
        assert outcomes["good"].value == "done"

    def test_timeout_marks_only_the_slow_task(self):
        release = threading.Event()

        def slow():
            release.wait(5)
            return "late"

        start = time.monotonic()
        outcomes = DispatchBridge().run({"slow": slow, "fast": lambda: "ok"}, timeout=0.2)
        elapsed = time.monotonic() - start
        release.set()

        assert outcomes["slow"].status == TIMEOUT
        assert outcomes["fast"].ok
        assert elapsed < 2

    def test_timed_out_task_keeps_running_and_can_be_awaited(self):
        release = threading.Event()
        outcomes = DispatchBridge().run({"slow": lambda: release.wait(5)}, timeout=0.1)

        abandoned = outcomes["slow"].future
        assert abandoned is not None
        assert not abandoned.done()
        release.set()
        assert abandoned.result(timeout=5) is True

    def test_finished_tasks_carry_no_future(self):
        outcomes = DispatchBridge().run({"a": lambda: 1})
        assert outcomes["a"].future is None

    def test_tasks_run_concurrently(self):
        barrier = threading.Barrier(3, timeout=5)

        def meet():
            barrier.wait()
            return True

        outcomes = DispatchBridge(max_workers=3).run({i: meet for i in range(3)})
        assert all(o.ok for o in outcomes.values())

    def test_on_done_called_once_per_task(self):
        seen = []
        DispatchBridge().run(
            {"a": lambda: 1, "b": lambda: 1 / 0},
            on_done=lambda outcome: seen.append((outcome.key, outcome.status)),
        )
        assert sorted(seen) == [("a", OK), ("b", FAILED)]

    def test_default_timeout_from_bridge(self):
        release = threading.Event()
        outcomes = DispatchBridge(timeout=0.1).run({"slow": lambda: release.wait(5)})
        release.set()
        assert outcomes["slow"].status == TIMEOUT

    def test_duration_is_recorded(self):
        outcomes = DispatchBridge().run({"nap": lambda: time.sleep(0.05)})
        assert outcomes["nap"].duration >= 0.04
