import threading

import pytest

from threadscope.internal import periodic


def test_periodic():
    x = {"OK": False}

    thread_started = threading.Event()
    thread_continue = threading.Event()

    def _run_periodic():
        thread_started.set()
        x["OK"] = True
        thread_continue.wait()

    def _on_shutdown():
        x["DOWN"] = True

    t = periodic.PeriodicThread(0.001, _run_periodic, on_shutdown=_on_shutdown)
    t.start()
    thread_started.wait()
    assert t.ident in periodic.PERIODIC_THREAD_IDS
    thread_continue.set()
    assert t.is_alive()
    t.stop()
    t.join()
    assert not t.is_alive()
    assert x["OK"]
    assert x["DOWN"]
    assert t.ident not in periodic.PERIODIC_THREAD_IDS
    assert t.daemon
    if hasattr(threading, "get_native_id"):
        assert t.native_id is not None


def test_periodic_double_start():
    def _run_periodic():
        pass

    t = periodic.PeriodicThread(0.1, _run_periodic)
    t.start()
    try:
        with pytest.raises(RuntimeError):
            t.start()
    finally:
        t.stop()
        t.join()


def test_periodic_error():
    x = {"OK": False}

    thread_started = threading.Event()
    thread_continue = threading.Event()

    def _run_periodic():
        thread_started.set()
        thread_continue.wait()
        raise ValueError

    def _on_shutdown():
        x["DOWN"] = True

    t = periodic.PeriodicThread(0.001, _run_periodic, on_shutdown=_on_shutdown)
    t.start()
    thread_started.wait()
    thread_continue.set()
    t.stop()
    t.join()
    assert "DOWN" not in x
    assert t.ident not in periodic.PERIODIC_THREAD_IDS


def test_stop_before_start():
    def x():
        pass

    t = periodic.PeriodicThread(1, x)
    assert not t.is_alive()
    t.stop()
    assert not t.quit.is_set()


def test_ignored_by_profilers():
    assert periodic.PeriodicThread._threadscope_profiling_ignore is True
