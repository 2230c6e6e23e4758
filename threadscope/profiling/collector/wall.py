# -*- encoding: utf-8 -*-
"""Wall-clock sampling of every thread."""
import threading
import typing

import attr

from threadscope.internal import periodic
from threadscope.internal.logger import get_logger
from threadscope.profiling import collector
from threadscope.profiling.collector import _tracemalloc
from threadscope.settings.profiling import config


LOG = get_logger(__name__)

# Minimum time between two tracemalloc snapshots, in nanoseconds
ALLOCATION_FLUSH_INTERVAL = 10_000_000


@collector.register_mode
@attr.s(eq=False, init=False)
class WallCollector(collector.EventCollector):
    """Sample the call stack of every thread at a fixed interval.

    Every tick adds a sample of weight 1 to each live thread, whether it is running, waiting on the GIL or sleeping.
    The threads of the profiler itself are never sampled.

    :param interval: The time between two ticks, in microseconds.
    :param allocation_sample_rate: Record one allocation notification out of this many.
    :param allocation_source: Where allocation notifications come from when ``allocation_sample_rate`` is set.
        Defaults to `tracemalloc` when no ``event_source`` is given; otherwise the event source itself must report
        allocations. `tracemalloc` only sees the blocks still alive when it is looked at, every
        ``ALLOCATION_FLUSH_INTERVAL`` at most, and reports them all as allocated by the thread starting the trace.
    """

    mode = "wall"
    __running_state__ = collector.CollectorState.SAMPLING

    interval = attr.ib(factory=lambda: config.interval, validator=collector._is_positive_int)
    allocation_sample_rate = attr.ib(
        factory=lambda: config.allocation_sample_rate, validator=collector._is_optional_positive_int
    )
    allocation_source = attr.ib(default=None, repr=False)

    _worker = attr.ib(default=None, init=False, repr=False)
    _allocation_sampler = attr.ib(default=None, init=False, repr=False)
    _active_allocation_source = attr.ib(default=None, init=False, repr=False)
    _last_allocation_flush = attr.ib(default=0, init=False, repr=False)
    _walk_cache = attr.ib(factory=dict, init=False, repr=False)

    def _start_mode(self):
        # type: () -> None
        if self.allocation_sample_rate is not None:
            self._allocation_sampler = collector.CaptureSampler(self.allocation_sample_rate)
            source = self.allocation_source
            if source is None and self.event_source is None:
                source = _tracemalloc.TracemallocAllocationSource(thread_id=self._started_by, report_frees=False)
            if source is not None:
                source.enable(self)
                self._active_allocation_source = source
                self._last_allocation_flush = self.current_time()
        try:
            self._worker = periodic.PeriodicThread(
                self.interval / 1e6,
                target=self.collect,
                name="threadscope:%s" % self.__class__.__name__,
            )
            self._worker.start()
        except BaseException:
            self._disable_allocation_source()
            raise

    def _stop_mode(self):
        # type: () -> None
        worker = self._worker
        try:
            if worker is not None:
                worker.stop()
                if worker is not threading.current_thread():
                    worker.join()
            if self._active_allocation_source is not None and not self._paused:
                self._active_allocation_source.flush()
        finally:
            self._disable_allocation_source()

    def _disable_allocation_source(self):
        # type: () -> None
        source, self._active_allocation_source = self._active_allocation_source, None
        if source is not None:
            source.disable()

    def join(self, timeout=None):
        # type: (typing.Optional[float]) -> None
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def _ignored_thread_ids(self):
        # type: () -> typing.Set[int]
        ignore = set(periodic.PERIODIC_THREAD_IDS) if self.ignore_profiler else set()
        if self._worker is not None and self._worker.ident is not None:
            ignore.add(self._worker.ident)
        return ignore

    def collect(self):
        # type: () -> None
        """Run one sampling tick."""
        if self._paused:
            return
        source = self._source
        source.flush()
        now = self.current_time()
        for tid, walk in source.thread_walks(self._ignored_thread_ids()):
            try:
                stack_id = source.intern_walk(self.interner, walk)
            except collector.CaptureMiss:
                LOG.debug("Thread %d could not be sampled", tid)
                continue
            if stack_id is not None:
                self._recorder.push_sample(tid, stack_id, 1, now)

        allocation_source = self._active_allocation_source
        if allocation_source is not None and now - self._last_allocation_flush >= ALLOCATION_FLUSH_INTERVAL:
            self._last_allocation_flush = now
            allocation_source.flush()

    def on_allocation(self, tid, walk, size, timestamp, key=None):
        # type: (int, typing.Any, int, int, typing.Any) -> None
        if self._paused or self._allocation_sampler is None or self._is_ignored(tid):
            return
        if not self._allocation_sampler.capture():
            return
        stack_id = self._walk_cache.get(walk) if isinstance(walk, tuple) else None
        if stack_id is None:
            try:
                stack_id = self._source.intern_walk(self.interner, walk)
            except collector.CaptureMiss:
                return
            if stack_id is None:
                return
            if isinstance(walk, tuple):
                self._walk_cache[walk] = stack_id
        self._recorder.push_allocation(tid, stack_id, size, timestamp)
