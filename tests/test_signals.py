import signal

import pytest

from electrum_index.signals import ExitError, ExitFlag, Signal


def test_exit_error_message():
    assert str(ExitError()) == "exiting due to signal"


def test_exit_flag_poll_after_set_raises():
    flag = ExitFlag()
    assert flag.poll() is None
    flag.set()
    with pytest.raises(ExitError):
        flag.poll()


def test_wait_times_out_without_notification():
    sig = Signal(install=False)
    assert sig.wait(timeout=0.05) is False


def test_terminating_signal_sets_exit_flag():
    sig = Signal(install=False)
    sig.trigger(signal.SIGTERM)
    assert sig.wait(timeout=1) is True
    with pytest.raises(ExitError):
        sig.exit_flag.poll()


def test_interrupt_sets_exit_flag():
    sig = Signal(install=False)
    sig.trigger(signal.SIGINT)
    assert sig.wait(timeout=1) is True
    with pytest.raises(ExitError):
        sig.exit_flag.poll()


def test_notify_signal_does_not_request_exit():
    sig = Signal(install=False)
    sig.trigger(signal.SIGUSR1)
    assert sig.wait(timeout=1) is True
    assert sig.exit_flag.poll() is None


def test_each_notification_is_received_once():
    sig = Signal(install=False)
    sig.trigger(signal.SIGUSR1)
    sig.trigger(signal.SIGUSR1)
    assert [sig.wait(timeout=0.5) for _ in range(3)] == [True, True, False]


def test_installed_handler_receives_raised_signal():
    handled = (signal.SIGINT, signal.SIGTERM, signal.SIGUSR1)
    saved = {signum: signal.getsignal(signum) for signum in handled}
    try:
        sig = Signal(install=True)
        signal.raise_signal(signal.SIGUSR1)
        assert sig.wait(timeout=1) is True
        assert sig.exit_flag.poll() is None
    finally:
        for signum, handler in saved.items():
            signal.signal(signum, handler)