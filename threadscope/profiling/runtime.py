# -*- encoding: utf-8 -*-
"""Sources of runtime notifications.

Collectors never talk to the interpreter directly: they consume an `EventSource` and receive notifications through
the methods of the `EventSink` protocol. `PythonEventSource` is the implementation for CPython; tests drive
collectors with fake sources.
"""
import abc
import collections
import gc
import platform
import sys
import threading
import time
import types
import typing

from typing_extensions import Protocol
import wrapt

from threadscope.internal import forksafe
from threadscope.internal.logger import get_logger
from threadscope.profiling import _threading
from threadscope.profiling import event
from threadscope.profiling.collector import CaptureMiss
from threadscope.profiling.collector import CollectorUnavailable
from threadscope.profiling.stack_table import StackInterner


try:
    import greenlet
except ImportError:
    greenlet = None


LOG = get_logger(__name__)


class EventSink(Protocol):
    """What a collector exposes to the sources feeding it."""

    def on_thread_started(self, tid, timestamp, name=None, internal=False):
        # type: (int, int, typing.Optional[str], bool) -> None
        ...

    def on_thread_exited(self, tid, timestamp, name=None, internal=False):
        # type: (int, int, typing.Optional[str], bool) -> None
        ...

    def on_scheduler_event(self, tid, marker_type, timestamp):
        # type: (int, event.MarkerType, int) -> None
        ...

    def on_fiber_switch(self, tid, timestamp, payload=None):
        # type: (int, int, typing.Optional[typing.Dict[str, typing.Any]]) -> None
        ...

    def on_gc_event(self, tid, marker_type, timestamp, payload=None):
        # type: (int, event.MarkerType, int, typing.Optional[typing.Dict[str, typing.Any]]) -> None
        ...

    def on_allocation(self, tid, walk, size, timestamp, key=None):
        # type: (int, typing.Any, int, int, typing.Any) -> None
        ...

    def on_free(self, key, timestamp):
        # type: (typing.Any, int) -> None
        ...


class EventSource(abc.ABC):
    """Something that notifies a sink about runtime activity."""

    @abc.abstractmethod
    def enable(self, sink):
        # type: (EventSink) -> None
        """Start notifying ``sink``."""

    @abc.abstractmethod
    def disable(self):
        # type: () -> None
        """Stop notifying. Must be safe to call when not enabled."""

    def flush(self):
        # type: () -> None
        """Deliver pending notifications."""


class RuntimeEventSource(EventSource):
    """An event source that can also walk the stacks of the runtime's threads."""

    @abc.abstractmethod
    def thread_walks(self, ignore=frozenset()):
        # type: (typing.Container[int]) -> typing.Iterable[typing.Tuple[int, typing.Any]]
        """Return the current call stack of every live thread, skipping the ids in ``ignore``.

        Each walk is whatever `intern_walk` accepts.
        """

    @abc.abstractmethod
    def thread_names(self):
        # type: () -> typing.Dict[int, str]
        """Return the names of the live threads, by thread id."""

    @abc.abstractmethod
    def main_thread_id(self):
        # type: () -> int
        pass

    @abc.abstractmethod
    def current_thread_id(self):
        # type: () -> int
        pass

    def intern_walk(self, interner, walk):
        # type: (StackInterner, typing.Any) -> typing.Optional[int]
        """Intern ``walk`` into ``interner``.

        :raise CaptureMiss: if the walk cannot be captured anymore.
        """
        if walk is None:
            raise CaptureMiss("empty walk")
        return interner.intern_walk(walk)


# Patches of the threading and time modules are shared by every enabled source.
_patch_lock = forksafe.Lock()
_patched_sources = []  # type: typing.List[PythonEventSource]


def _dispatch(method, *args):
    for source in list(_patched_sources):
        source._push(method, *args)


def _bootstrap_inner_wrapper(wrapped, instance, args, kwargs):
    tid = threading.get_ident()
    internal = getattr(instance, "_threadscope_profiling_ignore", False)
    _dispatch("on_thread_started", tid, time.monotonic_ns(), instance.name, internal)
    if not internal:
        _dispatch("on_scheduler_event", tid, event.MarkerType.THREAD_STALLED, time.monotonic_ns())
        _dispatch("on_scheduler_event", tid, event.MarkerType.THREAD_RUNNING, time.monotonic_ns())
    try:
        return wrapped(*args, **kwargs)
    finally:
        _dispatch("on_thread_exited", tid, time.monotonic_ns(), instance.name, internal)


def _sleep_wrapper(wrapped, instance, args, kwargs):
    tid = threading.get_ident()
    _dispatch("on_scheduler_event", tid, event.MarkerType.THREAD_SUSPENDED, time.monotonic_ns())
    try:
        return wrapped(*args, **kwargs)
    finally:
        # Waking up from sleep, the thread waits for the GIL before running again
        _dispatch("on_scheduler_event", tid, event.MarkerType.THREAD_STALLED, time.monotonic_ns())
        _dispatch("on_scheduler_event", tid, event.MarkerType.THREAD_RUNNING, time.monotonic_ns())


def _unwrap(obj, attr):
    # type: (typing.Any, str) -> None
    wrapper = vars(obj)[attr]
    setattr(obj, attr, wrapper.__wrapped__)


def _patch(source):
    # type: (PythonEventSource) -> None
    with _patch_lock:
        if not _patched_sources:
            wrapt.wrap_function_wrapper(threading.Thread, "_bootstrap_inner", _bootstrap_inner_wrapper)
            wrapt.wrap_function_wrapper(time, "sleep", _sleep_wrapper)
        _patched_sources.append(source)


def _unpatch(source):
    # type: (PythonEventSource) -> None
    with _patch_lock:
        try:
            _patched_sources.remove(source)
        except ValueError:
            return
        if not _patched_sources:
            _unwrap(threading.Thread, "_bootstrap_inner")
            _unwrap(time, "sleep")


class PythonEventSource(RuntimeEventSource):
    """Runtime notifications of the CPython interpreter.

    * stacks come from `sys._current_frames`;
    * GC phases come from `gc.callbacks`;
    * thread lifetimes come from a patch of `threading.Thread._bootstrap_inner`;
    * `time.sleep` is reported as the thread being suspended, then stalled and running once it wakes up;
    * greenlet switches on the thread that enabled the source come from `greenlet.settrace`, when greenlet is
      installed.

    Notifications are queued as they happen and delivered to the sink by `flush`, from the thread calling it. A GC
    callback can fire while the sink holds one of its own locks, so it must never call into the sink directly.
    Concurrent flushes are serialized so that the sink receives notifications in the order they were queued.
    """

    def __init__(self, trace_greenlets=True):
        # type: (bool) -> None
        self.trace_greenlets = trace_greenlets
        self._sink = None  # type: typing.Optional[EventSink]
        self._pending = collections.deque()  # type: typing.Deque[typing.Tuple[typing.Any, ...]]
        self._flush_lock = forksafe.RLock()
        self._greenlet_thread = None  # type: typing.Optional[int]
        self._previous_greenlet_tracer = None  # type: typing.Optional[typing.Callable[[str, typing.Any], None]]

    def __repr__(self):
        return "<%s enabled=%r pending=%d>" % (self.__class__.__name__, self._sink is not None, len(self._pending))

    def _push(self, method, *args):
        if self._sink is not None:
            self._pending.append((method,) + args)

    def enable(self, sink):
        # type: (EventSink) -> None
        if not hasattr(sys, "_current_frames"):
            raise CollectorUnavailable("sys._current_frames is not available on %s" % platform.python_implementation())
        self._sink = sink
        gc.callbacks.append(self._gc_callback)
        _patch(self)
        if self.trace_greenlets:
            self._enable_greenlet_tracer()

    def disable(self):
        # type: () -> None
        if self._gc_callback in gc.callbacks:
            gc.callbacks.remove(self._gc_callback)
        _unpatch(self)
        self._disable_greenlet_tracer()
        self._sink = None
        self._pending.clear()

    def flush(self):
        # type: () -> None
        sink = self._sink
        if sink is None:
            return
        pending = self._pending
        with self._flush_lock:
            while pending:
                try:
                    method, *args = pending.popleft()
                except IndexError:
                    break
                getattr(sink, method)(*args)

    def _gc_callback(self, phase, info):
        # type: (str, typing.Dict[str, int]) -> None
        if phase == "start":
            self._push(
                "on_gc_event",
                threading.get_ident(),
                event.MarkerType.GC_ENTER,
                time.monotonic_ns(),
                {"generation": info.get("generation")},
            )
        else:
            self._push(
                "on_gc_event",
                threading.get_ident(),
                event.MarkerType.GC_EXIT,
                time.monotonic_ns(),
                {
                    "generation": info.get("generation"),
                    "collected": info.get("collected"),
                    "uncollectable": info.get("uncollectable"),
                },
            )

    def _greenlet_tracer(self, evt, args):
        # type: (str, typing.Any) -> None
        if evt in ("switch", "throw"):
            origin, target = args
            self._push(
                "on_fiber_switch",
                threading.get_ident(),
                time.monotonic_ns(),
                {
                    "fiber_id": id(target),
                    "fiber": getattr(target, "name", None) or type(target).__qualname__,
                    "from_fiber_id": id(origin),
                },
            )
        if self._previous_greenlet_tracer is not None:
            self._previous_greenlet_tracer(evt, args)

    def _enable_greenlet_tracer(self):
        # type: () -> None
        if greenlet is None:
            LOG.debug("greenlet is not installed, fiber switches will not be reported")
            return
        try:
            self._previous_greenlet_tracer = greenlet.settrace(self._greenlet_tracer)
        except Exception:
            LOG.warning("greenlet tracing unavailable, fiber switches will not be reported", exc_info=True)
            return
        self._greenlet_thread = threading.get_ident()

    def _disable_greenlet_tracer(self):
        # type: () -> None
        if self._greenlet_thread is None:
            return
        # greenlet tracers are per thread
        if self._greenlet_thread == threading.get_ident():
            greenlet.settrace(self._previous_greenlet_tracer)
        else:
            LOG.debug("Greenlet tracer left in place: source disabled from another thread")
        self._greenlet_thread = None
        self._previous_greenlet_tracer = None

    def thread_walks(self, ignore=frozenset()):
        # type: (typing.Container[int]) -> typing.Iterable[typing.Tuple[int, types.FrameType]]
        for tid, frame in sys._current_frames().items():
            if tid not in ignore:
                yield tid, frame

    def intern_walk(self, interner, walk):
        # type: (StackInterner, typing.Any) -> typing.Optional[int]
        if isinstance(walk, types.FrameType):
            return interner.intern_frame(walk)
        return super(PythonEventSource, self).intern_walk(interner, walk)

    def thread_names(self):
        # type: () -> typing.Dict[int, str]
        return {
            thread.ident: _threading.pretty_name(thread)
            for thread in threading.enumerate()
            if thread.ident is not None and not getattr(thread, "_threadscope_profiling_ignore", False)
        }

    def main_thread_id(self):
        # type: () -> int
        return typing.cast(int, threading.main_thread().ident)

    def current_thread_id(self):
        # type: () -> int
        return threading.get_ident()
