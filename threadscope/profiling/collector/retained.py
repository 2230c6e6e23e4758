# -*- encoding: utf-8 -*-
"""Retained memory attribution.

The technique is to tag everything allocated during a window, then see what survives: objects allocated while
*collecting* are recorded with their call stack, frees keep being observed while *draining* so transient garbage
disappears, and whatever is still recorded when the trace stops is reported. This approximates retained-memory
attribution for a fraction of the cost of walking the object graph.
"""
import contextlib
import enum
import gc
import itertools
import types
import typing

import attr

from threadscope.internal import forksafe
from threadscope.internal.logger import get_logger
from threadscope.profiling import collector
from threadscope.profiling import event
from threadscope.profiling import recorder
from threadscope.profiling.collector import _tracemalloc
from threadscope.profiling.stack_table import StackInterner
from threadscope.profiling.stack_table import StackView
from threadscope.settings.profiling import config


LOG = get_logger(__name__)


class HeapTrackerState(enum.Enum):
    IDLE = "idle"
    # Watching for new objects and for freed objects
    COLLECTING = "collecting"
    # Ignoring new objects, watching for freed objects
    DRAINING = "draining"
    # Ignoring everything
    LOCKED = "locked"


@attr.s(frozen=True, slots=True)
class AllocationRecord(object):
    thread_id = attr.ib(type=int)
    stack_id = attr.ib(type=int)
    size = attr.ib(type=int)
    timestamp = attr.ib(type=int)


@attr.s(eq=False)
class HeapTracker(object):
    """Side table of the objects allocated while collecting and not freed since.

    Records are keyed by object identity, as given by the allocation source. The tracker is fed through
    `on_allocation` and `on_free`, either by ``source`` when one is given or by the collector owning it.
    """

    interner = attr.ib(factory=StackInterner, repr=False)
    source = attr.ib(default=None, repr=False)
    state = attr.ib(default=HeapTrackerState.IDLE, init=False)
    allocated_objects = attr.ib(default=0, init=False)
    freed_objects = attr.ib(default=0, init=False)
    _records = attr.ib(factory=dict, init=False, repr=False)
    _walk_cache = attr.ib(factory=dict, init=False, repr=False)
    _keys = attr.ib(factory=itertools.count, init=False, repr=False)
    _lock = attr.ib(factory=forksafe.Lock, init=False, repr=False)

    @classmethod
    @contextlib.contextmanager
    def tracking(cls, **kwargs):
        # type: (typing.Any) -> typing.Iterator[HeapTracker]
        """Track the objects allocated in a ``with`` block with a new tracker."""
        tracker = cls(**kwargs)
        with tracker.track():
            yield tracker

    @contextlib.contextmanager
    def track(self):
        # type: () -> typing.Iterator[HeapTracker]
        """Collect while the ``with`` block runs, then lock."""
        self.collect()
        try:
            yield self
        finally:
            self.lock()

    def _expect(self, *states):
        # type: (HeapTrackerState) -> None
        if self.state not in states:
            raise collector.StateError(self.__class__, self.state)

    def collect(self):
        # type: () -> None
        self._expect(HeapTrackerState.IDLE)
        if self.source is not None:
            self.source.enable(self)
        self.state = HeapTrackerState.COLLECTING

    def drain(self):
        # type: () -> None
        self._expect(HeapTrackerState.COLLECTING)
        if self.source is not None:
            self.source.flush()
        self.state = HeapTrackerState.DRAINING

    def lock(self):
        # type: () -> None
        if self.state is HeapTrackerState.COLLECTING:
            self.drain()
        self._expect(HeapTrackerState.DRAINING)
        try:
            if self.source is not None:
                self.source.flush()
        finally:
            if self.source is not None:
                self.source.disable()
            self.state = HeapTrackerState.LOCKED

    def _intern(self, walk):
        # type: (typing.Any) -> typing.Optional[int]
        if isinstance(walk, types.FrameType):
            return self.interner.intern_frame(walk)
        if isinstance(walk, tuple):
            stack_id = self._walk_cache.get(walk)
            if stack_id is None:
                stack_id = self._walk_cache[walk] = self.interner.intern_walk(walk)
            return stack_id
        return self.interner.intern_walk(walk)

    def on_allocation(self, tid, walk, size, timestamp, key=None):
        # type: (int, typing.Any, int, int, typing.Any) -> None
        if self.state is not HeapTrackerState.COLLECTING:
            return
        stack_id = self._intern(walk)
        if stack_id is None:
            return
        with self._lock:
            if key is None:
                key = ("anonymous", next(self._keys))
            self._records[key] = AllocationRecord(tid, stack_id, size, timestamp)
            self.allocated_objects += 1

    def on_free(self, key, timestamp):
        # type: (typing.Any, int) -> None
        if self.state not in (HeapTrackerState.COLLECTING, HeapTrackerState.DRAINING):
            return
        with self._lock:
            if self._records.pop(key, None) is not None:
                self.freed_objects += 1

    def stack_idx(self, key):
        # type: (typing.Any) -> typing.Optional[int]
        record = self._records.get(key)
        if record is None:
            return None
        return record.stack_id

    def stack(self, key):
        # type: (typing.Any) -> typing.Optional[StackView]
        idx = self.stack_idx(key)
        if idx is None:
            return None
        return self.interner.stack(idx)

    def records(self):
        # type: () -> typing.List[typing.Tuple[typing.Any, AllocationRecord]]
        with self._lock:
            return list(self._records.items())

    def live_bytes(self):
        # type: () -> int
        with self._lock:
            return sum(record.size for record in self._records.values())

    def __len__(self):
        return len(self._records)


@collector.register_mode
@attr.s(eq=False, init=False)
class RetainedCollector(collector.EventCollector):
    """Report the memory allocated while collecting that is still alive when the trace stops.

    The lifecycle is ``start()`` (collecting), ``drain()`` (draining) then ``stop()``; ``stop()`` drains first when
    called while collecting. Each surviving allocation is a sample weighted by its size in bytes.

    :param max_frames: The number of frames `tracemalloc` keeps for each allocation.
    :param allocation_source: Where allocation notifications come from. Defaults to `tracemalloc` when no
        ``event_source`` is given; otherwise the event source itself must report allocations.
    """

    mode = "retained"
    __running_state__ = collector.CollectorState.COLLECTING

    max_frames = attr.ib(factory=lambda: config.max_frames, validator=collector._is_positive_int)
    allocation_source = attr.ib(default=None, repr=False)

    tracker = attr.ib(default=None, init=False, repr=False)

    def _start_mode(self):
        # type: () -> None
        source = self.allocation_source
        if source is None and self.event_source is None:
            source = _tracemalloc.TracemallocAllocationSource(self.max_frames, thread_id=self._started_by)
        self.tracker = HeapTracker(self.interner, source)
        self.tracker.collect()

    def drain(self):
        # type: () -> None
        """Stop recording new allocations, keep observing frees.

        Forces a garbage collection first when the ``gc`` option is set.

        :raise StateError: if the collector is not collecting.
        """
        with self._service_lock:
            if self.state is not collector.CollectorState.COLLECTING:
                raise collector.StateError(self.__class__, self.state, "only a collecting collector can drain")
            self._drain()

    def _drain(self):
        # type: () -> None
        if self.gc:
            gc.collect()
        if not self._paused:
            self._source.flush()
            self.tracker.drain()
        self.state = collector.CollectorState.DRAINING
        LOG.debug("%s draining, %d objects recorded", self.__class__.__name__, len(self.tracker))

    def _stop_mode(self):
        # type: () -> None
        tracker = self.tracker
        if tracker is None:
            return
        try:
            if self._paused:
                return
            if self.state is collector.CollectorState.COLLECTING:
                self._drain()
            self._source.flush()
            tracker.lock()
        finally:
            if tracker.state is not HeapTrackerState.LOCKED and tracker.source is not None:
                tracker.source.disable()

    def on_allocation(self, tid, walk, size, timestamp, key=None):
        # type: (int, typing.Any, int, int, typing.Any) -> None
        if self._paused or self.tracker is None:
            return
        self.tracker.on_allocation(tid, walk, size, timestamp, key)

    def on_free(self, key, timestamp):
        # type: (typing.Any, int) -> None
        if self._paused or self.tracker is None:
            return
        self.tracker.on_free(key, timestamp)

    def _collect_threads(self):
        # type: () -> typing.Dict[int, recorder.ThreadRecorder]
        threads = self._recorder.reset()
        for _, record in self.tracker.records():
            thread = threads.get(record.thread_id)
            if thread is None:
                thread = threads[record.thread_id] = recorder.ThreadRecorder(record.thread_id, self._start_time)
            thread.samples.append(record.stack_id)
            thread.weights.append(record.size)
            thread.timestamps.append(record.timestamp)
            thread.categories.append(event.SampleCategory.RUNNING)
        return threads
