"""Tests for the bounded, cancellable poller."""

import threading

from aws2gcp.errors import TransientRemoteError


def _scripted(statuses):
    """fetch() that returns the given statuses in order and counts calls."""
    calls = {"n": 0}

    def fetch():
        value = statuses[min(calls["n"], len(statuses) - 1)]
        calls["n"] += 1
        if isinstance(value, Exception):
            raise value
        return value

    return fetch, calls


def _wait(poller, fetch, max_attempts=60):
    from aws2gcp.pipeline.poller import PollHandle

    return poller.wait_until(
        PollHandle("job-1", fetch),
        is_done=lambda s: s == "completed",
        is_failed=lambda s: s == "failed",
        interval=0,
        max_attempts=max_attempts,
    )


class TestPoller:
    def test_done_on_last_attempt_is_success(self):
        from aws2gcp.pipeline.poller import PollOutcome, Poller

        fetch, calls = _scripted(["pending"] * 59 + ["completed"])
        result = _wait(Poller(), fetch)

        assert result.outcome == PollOutcome.SUCCESS
        assert result.ok
        assert result.attempts == 60
        assert calls["n"] == 60

    def test_budget_exhausted_times_out_without_extra_poll(self):
        from aws2gcp.pipeline.poller import PollOutcome, Poller

        fetch, calls = _scripted(["pending"] * 100)
        result = _wait(Poller(), fetch)

        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.status == "pending"
        assert calls["n"] == 60

    def test_failure_returns_immediately(self):
        from aws2gcp.pipeline.poller import PollOutcome, Poller

        fetch, calls = _scripted(["pending", "failed", "completed"])
        result = _wait(Poller(), fetch)

        assert result.outcome == PollOutcome.REMOTE_FAILURE
        assert result.status == "failed"
        assert calls["n"] == 2

    def test_transient_fetch_error_counts_as_attempt(self):
        from aws2gcp.pipeline.poller import PollOutcome, Poller

        fetch, calls = _scripted([TransientRemoteError("throttled"), "pending", "completed"])
        result = _wait(Poller(), fetch, max_attempts=3)

        assert result.outcome == PollOutcome.SUCCESS
        assert result.attempts == 3

    def test_transient_errors_exhaust_budget(self):
        from aws2gcp.pipeline.poller import PollOutcome, Poller

        fetch, calls = _scripted([TransientRemoteError("throttled")])
        result = _wait(Poller(), fetch, max_attempts=4)

        assert result.outcome == PollOutcome.TIMED_OUT
        assert calls["n"] == 4

    def test_cancelled_before_first_poll(self):
        from aws2gcp.pipeline.poller import PollOutcome, Poller

        event = threading.Event()
        event.set()
        fetch, calls = _scripted(["pending"])
        result = _wait(Poller(event), fetch)

        assert result.outcome == PollOutcome.ABORTED
        assert calls["n"] == 0

    def test_cancel_wakes_sleeping_poller(self):
        from aws2gcp.pipeline.poller import PollHandle, PollOutcome, Poller

        event = threading.Event()
        calls = {"n": 0}

        def fetch():
            calls["n"] += 1
            event.set()
            return "pending"

        result = Poller(event).wait_until(
            PollHandle("job-2", fetch),
            is_done=lambda s: s == "completed",
            is_failed=lambda s: s == "failed",
            interval=3600,
            max_attempts=5,
        )

        assert result.outcome == PollOutcome.ABORTED
        assert calls["n"] == 1
