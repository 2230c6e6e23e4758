import time

import pytest

import threadscope
from threadscope.profiling import collector
from threadscope.profiling import profiler
from tests.profiling.utils import FakeEventSource


def test_start_stop():
    handle = threadscope.start("custom", event_source=FakeEventSource())
    assert handle.key == threadscope.DEFAULT_KEY
    assert handle.mode == "custom"
    assert threadscope.DEFAULT_KEY in profiler.registry
    assert profiler.registry.get(threadscope.DEFAULT_KEY) == handle
    handle.collector.sample()
    res = threadscope.stop(handle)
    assert isinstance(res, threadscope.Result)
    assert res.total_samples() == 1
    assert threadscope.DEFAULT_KEY not in profiler.registry
    assert profiler.registry.get(threadscope.DEFAULT_KEY) is None
    with pytest.raises(threadscope.StateError):
        threadscope.stop(handle)


def test_one_trace_per_key():
    first = threadscope.start("custom", event_source=FakeEventSource())
    try:
        with pytest.raises(threadscope.StateError) as exc_info:
            threadscope.start("custom", event_source=FakeEventSource())
        assert "already active" in str(exc_info.value)
        # The first trace is left untouched
        assert first.collector.running
        assert profiler.registry.get(threadscope.DEFAULT_KEY) == first

        other = threadscope.start("custom", key="other", event_source=FakeEventSource())
        assert len(profiler.registry) == 2
        threadscope.stop(other)
    finally:
        threadscope.stop(first)


def test_start_invalid_options():
    with pytest.raises(threadscope.ConfigurationError):
        threadscope.start("wall", interval=-1)
    with pytest.raises(threadscope.ConfigurationError):
        threadscope.start("nope")
    assert len(profiler.registry) == 0


def test_failing_start_unregisters():
    source = FakeEventSource()

    def enable(sink):
        raise RuntimeError("cannot enable")

    source.enable = enable
    with pytest.raises(RuntimeError):
        threadscope.start("custom", event_source=source)
    assert threadscope.DEFAULT_KEY not in profiler.registry


def test_stop_handle_of_other_trace():
    first = threadscope.start("custom", event_source=FakeEventSource())
    threadscope.stop(first)
    second = threadscope.start("custom", event_source=FakeEventSource())
    try:
        with pytest.raises(threadscope.StateError):
            threadscope.stop(first)
        assert second.collector.running
    finally:
        threadscope.stop(second)


def test_profile():
    with threadscope.profile("wall", interval=1000) as p:
        assert p.collector.running
        assert "active=True" in repr(p)
        time.sleep(0.05)
    assert p.collector is None
    assert p.result.total_samples() > 0
    assert "active=False" in repr(p)


def test_nested_profiles():
    with threadscope.profile("custom") as outer:
        outer.sample()
        with threadscope.profile("custom") as inner:
            inner.sample()
            outer.sample()
        assert outer.collector.running
    assert inner.result.total_samples() == 1
    assert outer.result.total_samples() == 2


def test_profile_keeps_result_on_exception():
    with pytest.raises(KeyError):
        with threadscope.profile("custom") as p:
            p.sample()
            raise KeyError("boom")
    assert p.result.total_samples() == 1


def test_profile_markers():
    with threadscope.profile("custom") as p:
        start = p.current_time()
        marker = p.add_marker("hello", start)
    assert marker.thread_id == p.result.main_thread.tid
    assert p.result.main_thread.markers == (marker,)
    with pytest.raises(threadscope.StateError):
        p.add_marker("late", start)


def test_profile_drain():
    with threadscope.profile("retained", event_source=FakeEventSource(), gc=False) as p:
        p.drain()
        assert p.collector.state is collector.CollectorState.DRAINING
    assert p.result.mode == "retained"
    with pytest.raises(threadscope.StateError):
        p.drain()


def test_trace_retained_options():
    p = threadscope.trace_retained(event_source=FakeEventSource())
    assert p.mode == "retained"
    assert p.options["gc"] is profiler.config.gc
    p = threadscope.trace_retained(gc=False)
    assert p.options["gc"] is False


def test_retained_start_runs_gc(monkeypatch):
    calls = []
    monkeypatch.setattr(profiler.gc, "collect", lambda: calls.append(1))
    handle = threadscope.start("retained", event_source=FakeEventSource(), gc=True)
    assert len(calls) == profiler.GC_RUNS_BEFORE_RETAINED
    threadscope.stop(handle)

    calls.clear()
    handle = threadscope.start("retained", event_source=FakeEventSource(), gc=False)
    threadscope.stop(handle)
    assert calls == []
