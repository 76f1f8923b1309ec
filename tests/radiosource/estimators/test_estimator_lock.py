"""Unit tests for the estimator reentrancy guard."""

import pytest

from radiosource.estimators.base import EstimatorLock, LockableEstimator
from radiosource.exceptions import LockedError


class EchoEstimator(LockableEstimator):
    """Minimal estimator notifying its listener around a constant result."""

    @property
    def is_ready(self):
        return True

    def estimate(self):
        with self._lock.hold():
            self._notify("on_estimate_start")
            self._notify("on_estimate_progress_change", 0.5)
            self._notify("on_estimate_end")
            return 42


class TestEstimatorLock:

    def test_hold_sets_and_releases(self):
        lock = EstimatorLock()
        assert not lock.locked
        with lock.hold():
            assert lock.locked
        assert not lock.locked

    def test_released_after_exception(self):
        lock = EstimatorLock()
        with pytest.raises(RuntimeError):
            with lock.hold():
                raise RuntimeError("boom")
        assert not lock.locked

    def test_check_raises_while_held(self):
        lock = EstimatorLock()
        with lock.hold():
            with pytest.raises(LockedError):
                lock.check()
            with pytest.raises(LockedError):
                with lock.hold():
                    pass


class TestLockableEstimator:

    def test_listener_receives_events(self):
        received = []

        class Listener:
            def on_estimate_start(self, estimator):
                received.append(("start", estimator.locked))

            def on_estimate_progress_change(self, estimator, progress):
                received.append(("progress", progress))

        estimator = EchoEstimator(Listener())
        assert estimator.estimate() == 42
        # on_estimate_end is optional on listeners
        assert received == [("start", True), ("progress", 0.5)]

    def test_listener_cannot_be_replaced_while_running(self):
        class Listener:
            def on_estimate_start(self, estimator):
                estimator.listener = None

        estimator = EchoEstimator(Listener())
        with pytest.raises(LockedError):
            estimator.estimate()
        assert estimator.listener is not None
        assert not estimator.locked
