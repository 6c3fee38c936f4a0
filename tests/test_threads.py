import logging
import threading

from electrum_index.threads import spawn


def test_spawn_runs_function_in_named_thread():
    seen = {}

    def work():
        seen["name"] = threading.current_thread().name
        seen["done"] = True

    thread = spawn("worker", work)
    thread.join(timeout=5)
    assert seen == {"name": "worker", "done": True}
    assert thread.name == "worker"


def test_spawned_thread_is_daemon():
    event = threading.Event()
    thread = spawn("daemonic", event.wait)
    try:
        assert thread.daemon is True
        assert thread.is_alive()
    finally:
        event.set()
        thread.join(timeout=5)
    assert not thread.is_alive()


def test_failure_is_logged(caplog):
    caplog.set_level(logging.WARNING)

    def fail():
        raise RuntimeError("bad")

    spawn("boom", fail).join(timeout=5)
    messages = [record.getMessage() for record in caplog.records]
    assert "boom thread failed: bad" in messages


def test_cause_chain_is_logged(caplog):
    caplog.set_level(logging.WARNING)

    def fail():
        try:
            raise ValueError("inner")
        except ValueError as err:
            raise RuntimeError("outer") from err

    spawn("chained", fail).join(timeout=5)
    messages = [record.getMessage() for record in caplog.records]
    assert messages == ["chained thread failed: outer", "because: inner"]


def test_success_logs_nothing(caplog):
    caplog.set_level(logging.WARNING)
    results = []
    spawn("quiet", lambda: results.append(1)).join(timeout=5)
    assert results == [1]
    assert caplog.records == []