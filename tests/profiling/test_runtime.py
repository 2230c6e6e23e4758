import gc
import sys
import threading
import time

import pytest

from threadscope.internal import periodic
from threadscope.profiling import collector
from threadscope.profiling import event
from threadscope.profiling import runtime
from threadscope.profiling.stack_table import StackInterner
from tests.profiling.utils import RecordingSink


@pytest.fixture
def source():
    s = runtime.PythonEventSource(trace_greenlets=False)
    sink = RecordingSink()
    s.enable(sink)
    yield s, sink
    s.disable()


def _scheduler_types(sink, tid):
    return [marker_type for t, marker_type, _ in sink.of("on_scheduler_event") if t == tid]


def test_queued_until_flush(source):
    s, sink = source
    time.sleep(0)
    assert sink.calls == []
    s.flush()
    assert _scheduler_types(sink, threading.get_ident()) == [
        event.MarkerType.THREAD_SUSPENDED,
        event.MarkerType.THREAD_STALLED,
        event.MarkerType.THREAD_RUNNING,
    ]
    timestamps = [ts for _, _, ts in sink.of("on_scheduler_event")]
    assert timestamps == sorted(timestamps)


def test_sleep_still_sleeps(source):
    start = time.monotonic()
    time.sleep(0.05)
    assert time.monotonic() - start >= 0.04


def test_patches_are_shared():
    original_sleep = time.sleep
    original_bootstrap = threading.Thread._bootstrap_inner
    s1 = runtime.PythonEventSource(trace_greenlets=False)
    s2 = runtime.PythonEventSource(trace_greenlets=False)
    sink1, sink2 = RecordingSink(), RecordingSink()
    s1.enable(sink1)
    s2.enable(sink2)
    try:
        assert time.sleep is not original_sleep
        time.sleep(0)
        s1.disable()
        # Still patched for the other source
        assert time.sleep is not original_sleep
        time.sleep(0)
        s2.flush()
        assert len(_scheduler_types(sink2, threading.get_ident())) == 6
        assert sink1.calls == []
    finally:
        s1.disable()
        s2.disable()
    assert time.sleep is original_sleep
    assert threading.Thread._bootstrap_inner is original_bootstrap


def test_disable_drops_pending(source):
    s, sink = source
    time.sleep(0)
    s.disable()
    s.flush()
    assert sink.calls == []
    assert "pending=0" in repr(s)


def test_threads(source):
    s, sink = source

    def worker():
        time.sleep(0)

    t = threading.Thread(target=worker, name="runtime-worker")
    t.start()
    t.join()
    s.flush()

    ((tid, started_at, name, internal),) = sink.of("on_thread_started")
    assert tid == t.ident
    assert name == "runtime-worker"
    assert internal is False
    ((tid, stopped_at, name, internal),) = sink.of("on_thread_exited")
    assert tid == t.ident
    assert started_at <= stopped_at
    assert _scheduler_types(sink, t.ident) == [
        event.MarkerType.THREAD_STALLED,
        event.MarkerType.THREAD_RUNNING,
        event.MarkerType.THREAD_SUSPENDED,
        event.MarkerType.THREAD_STALLED,
        event.MarkerType.THREAD_RUNNING,
    ]


def test_internal_threads(source):
    s, sink = source
    t = periodic.PeriodicThread(10, target=lambda: None, name="internal")
    t.start()
    t.stop()
    t.join()
    s.flush()
    ((tid, _, name, internal),) = sink.of("on_thread_started")
    assert internal is True
    assert _scheduler_types(sink, tid) == []
    assert tid not in s.thread_names()


def test_gc_events(source):
    s, sink = source
    gc.collect()
    s.flush()
    calls = [c for c in sink.of("on_gc_event") if c[0] == threading.get_ident()]
    types_ = [c[1] for c in calls]
    assert event.MarkerType.GC_ENTER in types_
    assert event.MarkerType.GC_EXIT in types_
    exit_payload = [c[3] for c in calls if c[1] is event.MarkerType.GC_EXIT][-1]
    assert exit_payload["generation"] == 2
    assert "collected" in exit_payload
    assert s._gc_callback in gc.callbacks
    s.disable()
    assert s._gc_callback not in gc.callbacks


def _injected_gc_events(sink):
    return [marker_type for _, marker_type, _, payload in sink.of("on_gc_event") if payload["generation"] == 42]


def test_concurrent_flushes_keep_order():
    entering = threading.Event()
    release = threading.Event()

    class SlowSink(RecordingSink):
        def on_gc_event(self, tid, marker_type, timestamp, payload=None):
            if marker_type is event.MarkerType.GC_ENTER and payload["generation"] == 42:
                entering.set()
                release.wait(5)
            super(SlowSink, self).on_gc_event(tid, marker_type, timestamp, payload)

    s = runtime.PythonEventSource(trace_greenlets=False)
    sink = SlowSink()
    s.enable(sink)
    try:
        s._gc_callback("start", {"generation": 42})
        s._gc_callback("stop", {"generation": 42, "collected": 0, "uncollectable": 0})
        first = threading.Thread(target=s.flush)
        first.start()
        assert entering.wait(5)
        second = threading.Thread(target=s.flush)
        second.start()
        second.join(0.1)
        # The second flush waits for the first one to deliver what it took
        assert _injected_gc_events(sink) == []
        release.set()
        first.join()
        second.join()
    finally:
        release.set()
        s.disable()
    assert _injected_gc_events(sink) == [event.MarkerType.GC_ENTER, event.MarkerType.GC_EXIT]


def test_thread_walks(source):
    s, _ = source
    ready = threading.Event()
    done = threading.Event()

    def worker():
        ready.set()
        done.wait()

    t = threading.Thread(target=worker)
    t.start()
    ready.wait()
    try:
        walks = dict(s.thread_walks())
        assert threading.get_ident() in walks
        assert t.ident in walks
        assert t.ident not in dict(s.thread_walks(ignore={t.ident}))

        interner = StackInterner()
        stack_id = s.intern_walk(interner, walks[t.ident])
        names = [frame.name for frame in interner.stack(stack_id).frames]
        assert any(name.endswith("worker") for name in names)
    finally:
        done.set()
        t.join()


def test_intern_walk(source):
    s, _ = source
    interner = StackInterner()
    with pytest.raises(collector.CaptureMiss):
        s.intern_walk(interner, None)
    assert s.intern_walk(interner, ((("f", "a.py", 1), 2),)) == 0


def test_thread_names(source):
    s, _ = source
    names = s.thread_names()
    assert names[threading.main_thread().ident] == "MainThread"
    assert s.main_thread_id() == threading.main_thread().ident
    assert s.current_thread_id() == threading.get_ident()


def test_unavailable(monkeypatch):
    monkeypatch.delattr(sys, "_current_frames")
    s = runtime.PythonEventSource()
    with pytest.raises(collector.CollectorUnavailable):
        s.enable(RecordingSink())
    assert s._gc_callback not in gc.callbacks


def test_greenlet_switches():
    greenlet = pytest.importorskip("greenlet")
    s = runtime.PythonEventSource()
    sink = RecordingSink()
    s.enable(sink)
    try:
        g = greenlet.greenlet(lambda: None)
        g.switch()
        s.flush()
    finally:
        s.disable()
    switches = sink.of("on_fiber_switch")
    assert switches
    assert all(tid == threading.get_ident() for tid, _, _ in switches)
    assert id(g) in {payload["fiber_id"] for _, _, payload in switches}
    assert greenlet.gettrace() is None
