# -*- encoding: utf-8 -*-
"""Start and stop traces.

Traces are started with `start`, which returns a `TraceHandle`, and stopped with `stop`, which takes that handle
and returns the `Result`. Active traces are kept in a registry by key: only one trace can be active for a given key
at a time. `Profile` uses a fresh key every time, so profiles can be nested::

    with threadscope.profile("wall", interval=1000) as p:
        run()
    print(p.result.total_samples())
"""
import gc
import itertools
import typing

import attr

from threadscope.internal import forksafe
from threadscope.internal.logger import get_logger
from threadscope.profiling import collector
from threadscope.settings.profiling import config


if typing.TYPE_CHECKING:  # pragma: no cover
    from threadscope.profiling.result import Result


LOG = get_logger(__name__)

DEFAULT_KEY = "default"

# Number of collections run before a retained trace starts
GC_RUNS_BEFORE_RETAINED = 3


@attr.s(frozen=True, slots=True)
class TraceHandle(object):
    """An active trace, as returned by `start`."""

    key = attr.ib()
    collector = attr.ib(eq=False, repr=False)

    @property
    def mode(self):
        # type: () -> str
        return self.collector.mode


class Registry(object):
    """Active collectors by key."""

    def __init__(self):
        self._lock = forksafe.Lock()
        self._active = {}  # type: typing.Dict[typing.Hashable, collector.EventCollector]

    def __contains__(self, key):
        return key in self._active

    def __len__(self):
        return len(self._active)

    def get(self, key):
        # type: (typing.Hashable) -> typing.Optional[TraceHandle]
        coll = self._active.get(key)
        if coll is None:
            return None
        return TraceHandle(key, coll)

    def add(self, key, coll):
        # type: (typing.Hashable, collector.EventCollector) -> TraceHandle
        """Register ``coll`` as the active collector for ``key``.

        :raise StateError: if another collector is already active for ``key``. That collector is left untouched.
        """
        with self._lock:
            active = self._active.get(key)
            if active is not None:
                raise collector.StateError(
                    active.__class__, active.state, "a trace is already active for key %r" % (key,)
                )
            self._active[key] = coll
        return TraceHandle(key, coll)

    def remove(self, handle):
        # type: (TraceHandle) -> collector.EventCollector
        """Unregister the collector of ``handle``.

        :raise StateError: if ``handle`` is not the active trace of its key.
        """
        with self._lock:
            active = self._active.get(handle.key)
            if active is None or active is not handle.collector:
                raise collector.StateError(
                    handle.collector.__class__, handle.collector.state, "trace %r is not active" % (handle.key,)
                )
            del self._active[handle.key]
        return active


registry = Registry()


def start(mode="wall", key=DEFAULT_KEY, **options):
    # type: (str, typing.Hashable, typing.Any) -> TraceHandle
    """Start a trace.

    :param mode: ``wall``, ``retained`` or ``custom``.
    :param key: The registry key of the trace.
    :param options: Options of the collector.
    :raise ConfigurationError: if the mode or an option is invalid.
    :raise StateError: if a trace is already active for ``key``.
    """
    coll = collector.create_collector(mode, **options)
    handle = registry.add(key, coll)
    try:
        if coll.mode == "retained" and coll.gc:
            for _ in range(GC_RUNS_BEFORE_RETAINED):
                gc.collect()
        coll.start()
    except BaseException:
        registry.remove(handle)
        raise
    LOG.debug("Started %s trace %r", mode, key)
    return handle


def stop(handle):
    # type: (TraceHandle) -> Result
    """Stop the trace of ``handle`` and return its result.

    :raise StateError: if the trace is not active.
    """
    coll = registry.remove(handle)
    return coll.stop()


_profile_keys = itertools.count()


class Profile(object):
    """Context manager running a trace for the duration of a ``with`` block.

    The result is available as ``result`` once the block exits, even when the block raised.
    """

    def __init__(self, mode="wall", **options):
        # type: (str, typing.Any) -> None
        self.mode = mode
        self.options = options
        self.handle = None  # type: typing.Optional[TraceHandle]
        self.result = None  # type: typing.Optional[Result]

    def __repr__(self):
        return "<%s mode=%r active=%r>" % (self.__class__.__name__, self.mode, self.handle is not None)

    def __enter__(self):
        # type: () -> Profile
        self.handle = start(self.mode, key=("profile", next(_profile_keys)), **self.options)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        handle, self.handle = self.handle, None
        if handle is not None:
            self.result = stop(handle)

    @property
    def collector(self):
        # type: () -> typing.Optional[collector.EventCollector]
        return self.handle.collector if self.handle is not None else None

    def _active_collector(self):
        # type: () -> collector.EventCollector
        if self.handle is None:
            raise collector.StateError(Profile, collector.CollectorState.STOPPED, "profile is not active")
        return self.handle.collector

    def add_marker(self, name, start, finish=None, thread=None, data=None, phase=None):
        return self._active_collector().add_marker(name, start, finish, thread=thread, data=data, phase=phase)

    def current_time(self):
        # type: () -> int
        return collector.EventCollector.current_time()

    def sample(self):
        # type: () -> typing.Optional[int]
        """Take a sample of a ``custom`` profile."""
        return self._active_collector().sample(skip_frames=1)  # type: ignore[attr-defined]

    def drain(self):
        # type: () -> None
        """Start draining a ``retained`` profile."""
        self._active_collector().drain()  # type: ignore[attr-defined]


def profile(mode="wall", **options):
    # type: (str, typing.Any) -> Profile
    return Profile(mode, **options)


def trace_retained(**options):
    # type: (typing.Any) -> Profile
    """Profile the memory retained by a ``with`` block.

    Garbage collections run before the trace starts and when it drains unless ``gc=False`` is given.
    """
    options.setdefault("gc", config.gc)
    return Profile("retained", **options)
