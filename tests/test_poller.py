"""Tests for bounded state polling."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from conftest import FakeClock

from onevm.poller import PollTimeoutError, wait_for


def scripted(labels: list[str]) -> tuple[Callable[[], tuple[int, str]], list[int]]:
    """Refresh function returning labels in order; the last one repeats."""
    calls: list[int] = []

    def refresh() -> tuple[int, str]:
        calls.append(1)
        index = min(len(calls), len(labels)) - 1
        return index, labels[index]

    return refresh, calls


class TestWaitFor:
    """Tests for wait_for()."""

    def test_immediate_success_does_not_sleep(self, fake_clock: FakeClock) -> None:
        """Test that a target on the first attempt returns without sleeping."""
        refresh, calls = scripted(["running"])

        result = wait_for(
            refresh,
            "running",
            timeout_seconds=60,
            interval_seconds=10,
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

        assert result == 0
        assert len(calls) == 1
        assert fake_clock.sleeps == []

    def test_success_after_transitions(self, fake_clock: FakeClock) -> None:
        """Test that the observation carrying the target is returned."""
        refresh, calls = scripted(["provisioning", "provisioning", "running"])

        result = wait_for(
            refresh,
            "running",
            timeout_seconds=60,
            interval_seconds=10,
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

        assert result == 2
        assert len(calls) == 3
        assert fake_clock.sleeps == [10, 10]

    def test_timeout(self, fake_clock: FakeClock) -> None:
        """Test that PollTimeoutError carries the target and last label."""
        refresh, _ = scripted(["provisioning"])

        with pytest.raises(PollTimeoutError) as exc_info:
            wait_for(
                refresh,
                "running",
                timeout_seconds=30,
                interval_seconds=10,
                sleep=fake_clock.sleep,
                clock=fake_clock,
            )

        assert exc_info.value.target == "running"
        assert exc_info.value.last_label == "provisioning"
        assert exc_info.value.elapsed_seconds == 30
        assert "running" in str(exc_info.value)

    def test_last_sleep_clamped_to_deadline(self, fake_clock: FakeClock) -> None:
        """Test that the wait never overshoots the timeout."""
        refresh, calls = scripted(["provisioning"])

        with pytest.raises(PollTimeoutError):
            wait_for(
                refresh,
                "running",
                timeout_seconds=25,
                interval_seconds=10,
                sleep=fake_clock.sleep,
                clock=fake_clock,
            )

        assert fake_clock.sleeps == [10, 10, 5]
        assert len(calls) == 4
        assert fake_clock.now == 25

    def test_refresh_error_propagates(self, fake_clock: FakeClock) -> None:
        """Test that an error on the Nth attempt ends the wait unchanged."""
        attempts: list[int] = []

        def refresh() -> tuple[None, str]:
            attempts.append(1)
            if len(attempts) == 3:
                raise ConnectionError("frontend unreachable")
            return None, "provisioning"

        with pytest.raises(ConnectionError, match="frontend unreachable"):
            wait_for(
                refresh,
                "running",
                timeout_seconds=60,
                interval_seconds=10,
                sleep=fake_clock.sleep,
                clock=fake_clock,
            )

        assert len(attempts) == 3

    def test_initial_delay(self, fake_clock: FakeClock) -> None:
        """Test that the initial delay is slept before the first attempt."""
        refresh, _ = scripted(["running"])

        wait_for(
            refresh,
            "running",
            timeout_seconds=60,
            interval_seconds=10,
            initial_delay_seconds=3,
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

        assert fake_clock.sleeps == [3]

    def test_backoff_capped(self, fake_clock: FakeClock) -> None:
        """Test that the interval grows by the factor up to the cap."""
        refresh, _ = scripted(["a", "b", "c", "d", "running"])

        wait_for(
            refresh,
            "running",
            timeout_seconds=600,
            interval_seconds=5,
            backoff_factor=2.0,
            max_interval_seconds=15,
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

        assert fake_clock.sleeps == [5, 10, 15, 15]
