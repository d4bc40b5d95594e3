# tests/test_cancellation.py
import threading

import pytest

from bulkmerge.cancellation import CancellationToken
from bulkmerge.exceptions import MergeCancelled


class TestCancellationToken:
    """Test the cooperative cancellation token."""

    def test_initial_state(self):
        """Test a new token is not cancelled."""
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled('load')
        assert repr(token) == 'CancellationToken(cancelled=False)'

    def test_raise_if_cancelled(self):
        """Test the raised error carries phase and tables."""
        token = CancellationToken()
        token.cancel()

        with pytest.raises(MergeCancelled) as exc_info:
            token.raise_if_cancelled('load', table='earth_kingdom', staging='t_earth_kingdom_1')

        err = exc_info.value
        assert err.phase == 'load'
        assert err.table == 'earth_kingdom'
        assert str(err) == '[load] earth_kingdom via t_earth_kingdom_1: operation cancelled'

    def test_callbacks_run_once(self):
        """Test callbacks run on the first cancel only."""
        token = CancellationToken()
        calls = []
        token.register(lambda: calls.append('Appa'))

        token.cancel()
        token.cancel()
        assert calls == ['Appa']

    def test_register_after_cancel_runs_immediately(self):
        """Test registering on a cancelled token runs the callback at once."""
        token = CancellationToken()
        token.cancel()
        calls = []
        unregister = token.register(lambda: calls.append('Momo'))
        assert calls == ['Momo']
        unregister()

    def test_unregister(self):
        """Test an unregistered callback is not run."""
        token = CancellationToken()
        calls = []
        unregister = token.register(lambda: calls.append('Sokka'))
        unregister()
        unregister()
        token.cancel()
        assert calls == []

    def test_failing_callback_does_not_stop_others(self, caplog):
        """Test one failing callback is logged and the rest still run."""
        token = CancellationToken()
        calls = []

        def broken():
            raise RuntimeError('boomerang lost')

        token.register(broken)
        token.register(lambda: calls.append('Suki'))
        token.cancel()

        assert calls == ['Suki']
        assert 'boomerang lost' in caplog.text

    def test_cancel_from_another_thread(self):
        """Test wait() returns once another thread cancels."""
        token = CancellationToken()
        assert token.wait(0.01) is False

        timer = threading.Timer(0.01, token.cancel)
        timer.start()
        assert token.wait(5) is True
        timer.join()
        assert token.cancelled
