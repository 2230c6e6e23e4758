# -*- encoding: utf-8 -*-
import enum
import os
import time
import typing

import attr

from threadscope.internal import forksafe
from threadscope.internal import periodic
from threadscope.internal import service
from threadscope.internal.logger import get_logger
from threadscope.profiling import _threading
from threadscope.profiling import event
from threadscope.profiling import hooks as hooks_mod
from threadscope.profiling import recorder
from threadscope.profiling import result as result_mod
from threadscope.profiling.stack_table import StackInterner
from threadscope.settings.profiling import config


LOG = get_logger(__name__)


class CollectorError(Exception):
    pass


class ConfigurationError(CollectorError, ValueError):
    """A collector was given an invalid mode or option."""


class StateError(CollectorError, service.ServiceStatusError):
    """A collector operation is not allowed in the collector's current state."""


class CaptureMiss(CollectorError):
    """The stack of a thread could not be captured during a sampling tick."""


class CollectorUnavailable(CollectorError):
    pass


class CollectorState(enum.Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    COLLECTING = "collecting"
    DRAINING = "draining"
    OPEN = "open"
    STOPPED = "stopped"


class CaptureSampler(object):
    """Determine the events that should be captured: one out of every ``rate``."""

    def __init__(self, rate: int = 1):
        if rate < 1:
            raise ValueError("Capture rate should be a positive integer")
        self.rate: int = rate
        self._counter: int = 0

    def __repr__(self):
        class_name = self.__class__.__name__
        attrs = {k: v for k, v in self.__dict__.items() if not k.startswith("_")}
        attrs_str = ", ".join(f"{k}={v!r}" for k, v in attrs.items())
        return f"{class_name}({attrs_str})"

    def capture(self):
        self._counter += 1
        if self._counter >= self.rate:
            self._counter = 0
            return True
        return False


def _to_tuple(value):
    if value is None:
        return ()
    if isinstance(value, (str, type)) or not hasattr(value, "__iter__"):
        return (value,)
    return tuple(value)


def _are_hooks(instance, attribute, value):
    for hook in value:
        if isinstance(hook, str):
            try:
                hooks_mod.get_hook_class(hook)
            except hooks_mod.UnknownHookError as e:
                raise ConfigurationError(e.args[0]) from None
        elif isinstance(hook, type):
            if not issubclass(hook, hooks_mod.Hook):
                raise ConfigurationError("%r is not a hook class" % hook)
        elif not isinstance(hook, hooks_mod.Hook):
            raise ConfigurationError("%r is not a hook" % (hook,))


def _is_bool(instance, attribute, value):
    if not isinstance(value, bool):
        raise ConfigurationError("%s must be a boolean, not %r" % (attribute.name.lstrip("_"), value))


def _is_positive_int(instance, attribute, value):
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError("%s must be a positive integer, not %r" % (attribute.name.lstrip("_"), value))


def _is_optional_positive_int(instance, attribute, value):
    if value is not None:
        _is_positive_int(instance, attribute, value)


@attr.s(eq=False, init=False)
class EventCollector(service.Service):
    """Base class of the collectors.

    A collector owns the interning tables and the per-thread streams of one trace. It receives runtime notifications
    from its event source and turns them into samples and markers. Stopping it returns the `Result` of the trace.

    Options are passed as keyword arguments; unknown options or invalid values raise `ConfigurationError`.
    """

    mode = None  # type: typing.Optional[str]
    __running_state__ = CollectorState.SAMPLING
    __status_error__ = StateError

    event_source = attr.ib(default=None, repr=False)
    hooks = attr.ib(factory=tuple, converter=_to_tuple, validator=_are_hooks)
    gc = attr.ib(factory=lambda: config.gc, validator=_is_bool)
    ignore_profiler = attr.ib(factory=lambda: config.ignore_profiler, validator=_is_bool)
    enable_asserts = attr.ib(factory=lambda: config.enable_asserts, validator=_is_bool)

    interner = attr.ib(factory=StackInterner, init=False, repr=False)
    state = attr.ib(default=CollectorState.IDLE, init=False)
    result = attr.ib(default=None, init=False, repr=False)
    _source = attr.ib(default=None, init=False, repr=False)
    _recorder = attr.ib(default=None, init=False, repr=False)
    _thread_names = attr.ib(factory=_threading.ThreadNames, init=False, repr=False)
    _main_thread_id = attr.ib(default=None, init=False, repr=False)
    _started_by = attr.ib(default=None, init=False, repr=False)
    _start_time = attr.ib(default=None, init=False, repr=False)
    _started_at_wall = attr.ib(default=None, init=False, repr=False)
    _end_time = attr.ib(default=None, init=False, repr=False)
    _active_hooks = attr.ib(factory=list, init=False, repr=False)
    _paused = attr.ib(default=False, init=False, repr=False)

    def __init__(self, **options):
        unknown = sorted(set(options) - self.option_names())
        if unknown:
            raise ConfigurationError(
                "Unknown option(s) for %s mode: %s" % (self.mode or self.__class__.__name__, ", ".join(unknown))
            )
        self.__attrs_init__(**options)

    @classmethod
    def option_names(cls):
        # type: () -> typing.Set[str]
        return {getattr(a, "alias", None) or a.name.lstrip("_") for a in attr.fields(cls) if a.init}

    @staticmethod
    def current_time():
        # type: () -> int
        """Return the current time of the trace clock, in nanoseconds."""
        return time.monotonic_ns()

    def __exit__(self, exc_type, exc_value, traceback):
        if self.state is self.__running_state__ or self.state is CollectorState.DRAINING:
            self.stop()
        self.join()

    # Service lifecycle

    def start(self):
        # type: () -> None
        with self._service_lock:
            if self.state is not CollectorState.IDLE:
                reason = "a stopped collector cannot be restarted" if self.state is CollectorState.STOPPED else None
                raise StateError(self.__class__, self.state, reason)
            super(EventCollector, self).start()

    def stop(self):
        # type: () -> result_mod.Result
        """Stop the collector and return the result of the trace."""
        with self._service_lock:
            if self.state is CollectorState.IDLE:
                raise StateError(self.__class__, self.state, "collector was never started")
            if self.state is CollectorState.STOPPED:
                raise StateError(self.__class__, self.state)
            return super(EventCollector, self).stop()

    def _default_event_source(self):
        from threadscope.profiling import runtime

        return runtime.PythonEventSource()

    def _start_service(self):
        # type: () -> None
        source = self.event_source if self.event_source is not None else self._default_event_source()
        self._source = source
        self._start_time = self.current_time()
        self._started_at_wall = time.time_ns() - (self.current_time() - self._start_time)
        self._recorder = recorder.Recorder(default_started_at=self._start_time)
        self._main_thread_id = source.main_thread_id()
        self._started_by = source.current_thread_id()

        try:
            for tid, name in source.thread_names().items():
                if not self._is_ignored(tid):
                    self._recorder.thread_started(tid, self._start_time, name)
                    self._thread_names.update({tid: name})

            forksafe.register(self._after_fork)
            self._active_hooks = self._build_hooks()
            for hook in self._active_hooks:
                hook.enable()
            source.enable(self)
            self._start_mode()
        except BaseException:
            self._release()
            self._recorder.close()
            raise

        self.state = self.__running_state__
        LOG.debug("%s started", self.__class__.__name__)

    def _stop_service(self):
        # type: () -> result_mod.Result
        try:
            self._stop_mode()
            if not self._paused:
                self._source.flush()
            self._thread_names.update(self._source.thread_names())
        finally:
            self._end_time = self.current_time()
            self._release()
            self.state = CollectorState.STOPPED
        self.result = self._assemble()
        LOG.debug("%s stopped", self.__class__.__name__)
        return self.result

    def _release(self):
        # type: () -> None
        try:
            self._source.disable()
        except Exception:
            LOG.exception("Failed to disable event source %r", self._source)
        for hook in self._active_hooks:
            try:
                hook.disable()
            except Exception:
                LOG.exception("Failed to disable hook %r", hook)
        try:
            forksafe.unregister(self._after_fork)
        except ValueError:
            pass

    def _start_mode(self):
        # type: () -> None
        """Start what the mode needs on top of the common machinery."""

    def _stop_mode(self):
        # type: () -> None
        """Stop what `_start_mode` started."""

    def _after_fork(self):
        # type: () -> None
        # The child has a copy of tables that might have been in the middle of a mutation: never touch them again.
        self._paused = True

    def _build_hooks(self):
        # type: () -> typing.List[hooks_mod.Hook]
        built = []
        for hook in self.hooks:
            if isinstance(hook, str):
                hook = hooks_mod.get_hook_class(hook)(self)
            elif isinstance(hook, type):
                hook = hook(self)
            built.append(hook)
        return built

    def _is_ignored(self, tid):
        # type: (int) -> bool
        return self.ignore_profiler and tid in periodic.PERIODIC_THREAD_IDS

    @property
    def running(self):
        # type: () -> bool
        return self.state in (self.__running_state__, CollectorState.DRAINING)

    @property
    def paused(self):
        # type: () -> bool
        return self._paused

    # Markers

    def add_marker(
        self,
        name,  # type: str
        start,  # type: int
        finish=None,  # type: typing.Optional[int]
        thread=None,  # type: typing.Optional[int]
        data=None,  # type: typing.Optional[typing.Dict[str, typing.Any]]
        phase=None,  # type: typing.Optional[event.MarkerPhase]
    ):
        # type: (...) -> typing.Optional[event.Marker]
        """Add a user marker to the timeline of a thread.

        :param name: The name of the marker.
        :param start: The start time of the marker, in nanoseconds of the trace clock (see `current_time`).
        :param finish: The end time of the marker. Instant markers have none.
        :param thread: The id of the thread. Defaults to the calling thread.
        :param data: A payload to attach to the marker.
        :param phase: The phase of the marker. Defaults to instant, or interval if ``finish`` is set.
        :return: The marker, or `None` if the collector is paused after a fork.
        :raise StateError: if the collector is not running.
        :raise ValueError: if ``finish`` does not fit ``phase``.
        """
        if not self.running:
            raise StateError(self.__class__, self.state, "markers can only be added while running")
        if self._paused:
            return None
        if phase is None:
            phase = event.MarkerPhase.INSTANT if finish is None else event.MarkerPhase.INTERVAL
        if thread is None:
            thread = self._source.current_thread_id()
        return self._recorder.push_marker(
            thread, event.MarkerType.USER, start, end=finish, phase=phase, name=name, payload=data
        )

    # Runtime notifications

    def on_thread_started(self, tid, timestamp, name=None, internal=False):
        # type: (int, int, typing.Optional[str], bool) -> None
        if self._paused or (internal and self.ignore_profiler) or self._is_ignored(tid):
            return
        self._recorder.thread_started(tid, timestamp, name)
        if name:
            self._thread_names.update({tid: name})

    def on_thread_exited(self, tid, timestamp, name=None, internal=False):
        # type: (int, int, typing.Optional[str], bool) -> None
        if self._paused or (internal and self.ignore_profiler) or self._is_ignored(tid):
            return
        self._recorder.push_marker(tid, event.MarkerType.THREAD_EXITED, timestamp)
        self._recorder.thread_stopped(tid, timestamp, name)
        if name:
            self._thread_names.update({tid: name})

    def on_scheduler_event(self, tid, marker_type, timestamp):
        # type: (int, event.MarkerType, int) -> None
        if self._paused or self._is_ignored(tid):
            return
        if marker_type not in event.SCHEDULER_MARKERS:
            raise ValueError("%r is not a scheduler marker" % (marker_type,))
        if marker_type is event.MarkerType.THREAD_EXITED:
            self.on_thread_exited(tid, timestamp)
        else:
            self._recorder.push_marker(tid, marker_type, timestamp)

    def on_fiber_switch(self, tid, timestamp, payload=None):
        # type: (int, int, typing.Optional[typing.Dict[str, typing.Any]]) -> None
        if self._paused or self._is_ignored(tid):
            return
        self._recorder.push_marker(tid, event.MarkerType.FIBER_SWITCH, timestamp, payload=payload)

    def on_gc_event(self, tid, marker_type, timestamp, payload=None):
        # type: (int, event.MarkerType, int, typing.Optional[typing.Dict[str, typing.Any]]) -> None
        if self._paused:
            return
        if marker_type not in (event.MarkerType.GC_ENTER, event.MarkerType.GC_EXIT):
            raise ValueError("%r is not a GC marker" % (marker_type,))
        self._recorder.push_marker(tid, marker_type, timestamp, payload=payload)

    def on_allocation(self, tid, walk, size, timestamp, key=None):
        # type: (int, typing.Any, int, int, typing.Any) -> None
        """An object of ``size`` bytes was allocated by ``tid`` with the call stack ``walk``."""

    def on_free(self, key, timestamp):
        # type: (typing.Any, int) -> None
        """The object identified by ``key`` was freed."""

    # Result

    def _meta(self):
        # type: () -> result_mod.Meta
        return result_mod.Meta(
            mode=self.mode,
            pid=os.getpid(),
            start_time=self._start_time,
            end_time=self._end_time,
            started_at=self._started_at_wall,
            interval=getattr(self, "interval", None),
            allocation_sample_rate=getattr(self, "allocation_sample_rate", None),
            gc=self.gc and self.mode == "retained",
            hooks=tuple(hook.name or type(hook).__name__ for hook in self._active_hooks),
        )

    def _collect_threads(self):
        # type: () -> typing.Dict[int, recorder.ThreadRecorder]
        return self._recorder.reset()

    def _assemble(self):
        # type: () -> result_mod.Result
        self._recorder.close()
        counters = {}  # type: typing.Dict[str, typing.Any]
        marker_schema = []  # type: typing.List[typing.Dict[str, typing.Any]]
        for hook in self._active_hooks:
            counters.update(hook.counters())
            marker_schema.extend(hook.marker_schema())
        return result_mod.assemble(
            meta=self._meta(),
            threads=self._collect_threads(),
            exited_threads=self._recorder.retired,
            interner=self.interner,
            thread_names=self._thread_names,
            main_thread_id=self._main_thread_id,
            counters=counters,
            marker_schema=marker_schema,
            check_integrity=self.enable_asserts,
        )


_COLLECTOR_CLASSES = {}  # type: typing.Dict[str, typing.Type[EventCollector]]


def register_mode(cls):
    # type: (typing.Type[EventCollector]) -> typing.Type[EventCollector]
    _COLLECTOR_CLASSES[typing.cast(str, cls.mode)] = cls
    return cls


def create_collector(mode, **options):
    # type: (str, typing.Any) -> EventCollector
    """Create a collector for ``mode``.

    :param mode: One of ``wall``, ``retained`` or ``custom``.
    :raise ConfigurationError: if the mode is unknown or an option is invalid.
    """
    # Make sure the built-in modes registered themselves
    from threadscope.profiling.collector import custom  # noqa:F401
    from threadscope.profiling.collector import retained  # noqa:F401
    from threadscope.profiling.collector import wall  # noqa:F401

    try:
        cls = _COLLECTOR_CLASSES[mode]
    except (KeyError, TypeError):
        raise ConfigurationError(
            "Unknown mode %r, expected one of %s" % (mode, ", ".join(sorted(_COLLECTOR_CLASSES)))
        ) from None
    return cls(**options)
