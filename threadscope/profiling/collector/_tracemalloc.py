# -*- encoding: utf-8 -*-
"""Allocation notifications backed by `tracemalloc`.

`tracemalloc` does not report allocations one by one: it keeps a trace of every live memory block. The source
compares snapshots of those traces instead:

* the first `flush` reports every block traced since `enable` as an allocation;
* every later `flush` reports as freed the blocks that disappeared since then.

Without ``report_frees``, every `flush` instead reports the blocks traced since the previous one and frees are never
reported. Blocks allocated and freed between two flushes are not seen.

Blocks are told apart by their traceback and size only, so each ``(traceback, size)`` group is handled as a
multiset. Blocks that were already traced when the source got enabled are left out.
"""
import collections
import os
import threading
import time
import tracemalloc
import typing

from threadscope.internal import forksafe
from threadscope.internal.logger import get_logger
from threadscope.profiling import _line2def
from threadscope.profiling.runtime import EventSink
from threadscope.profiling.runtime import EventSource
from threadscope.settings.profiling import config


LOG = get_logger(__name__)

_PACKAGE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

_lock = forksafe.Lock()
_users = 0
_started_here = False


def _acquire(max_frames):
    # type: (int) -> bool
    """Make sure tracemalloc is tracing. Return whether it already was."""
    global _users, _started_here

    with _lock:
        was_tracing = tracemalloc.is_tracing()
        if not was_tracing:
            tracemalloc.start(max_frames)
            _started_here = True
        elif tracemalloc.get_traceback_limit() < max_frames:
            LOG.debug(
                "tracemalloc already traces %d frames, fewer than the %d requested",
                tracemalloc.get_traceback_limit(),
                max_frames,
            )
        _users += 1
        return was_tracing


def _release():
    # type: () -> None
    global _users, _started_here

    with _lock:
        _users -= 1
        if _users <= 0:
            _users = 0
            if _started_here:
                tracemalloc.stop()
                _started_here = False


GroupKey = typing.Tuple[tracemalloc.Traceback, int]


class TracemallocAllocationSource(EventSource):
    """Report the memory blocks allocated while enabled, then those freed.

    `tracemalloc` does not know which thread allocated a block: every block is reported as allocated by
    ``thread_id``, the thread enabling the source by default.
    """

    def __init__(self, max_frames=None, thread_id=None, ignore_package=True, report_frees=True):
        # type: (typing.Optional[int], typing.Optional[int], bool, bool) -> None
        self.max_frames = config.max_frames if max_frames is None else max_frames
        self.thread_id = thread_id
        self.ignore_package = ignore_package
        self.report_frees = report_frees
        self._sink = None  # type: typing.Optional[EventSink]
        self._baseline = collections.Counter()  # type: typing.Counter[GroupKey]
        self._reported = None  # type: typing.Optional[typing.Dict[GroupKey, int]]
        self._last = collections.Counter()  # type: typing.Counter[GroupKey]
        self._walks = {}  # type: typing.Dict[tracemalloc.Traceback, typing.Tuple[typing.Tuple[typing.Any, int], ...]]

    def __repr__(self):
        return "<%s max_frames=%d enabled=%r>" % (self.__class__.__name__, self.max_frames, self._sink is not None)

    def _filters(self):
        # type: () -> typing.List[tracemalloc.Filter]
        filters = [tracemalloc.Filter(False, tracemalloc.__file__)]
        if self.ignore_package:
            filters.append(tracemalloc.Filter(False, os.path.join(_PACKAGE_DIR, "*")))
        return filters

    def _counts(self):
        # type: () -> typing.Counter[GroupKey]
        snapshot = tracemalloc.take_snapshot().filter_traces(self._filters())
        return collections.Counter((trace.traceback, trace.size) for trace in snapshot.traces)

    def _walk(self, traceback):
        # type: (tracemalloc.Traceback) -> typing.Tuple[typing.Tuple[typing.Any, int], ...]
        walk = self._walks.get(traceback)
        if walk is None:
            # Tracebacks go from the oldest frame to the most recent one
            walk = self._walks[traceback] = tuple(
                (_line2def.filename_and_lineno_to_def(frame.filename, frame.lineno), frame.lineno)
                for frame in reversed(traceback)
            )
        return walk

    def enable(self, sink):
        # type: (EventSink) -> None
        if self._sink is not None:
            raise RuntimeError("%r is already enabled" % self)
        if self.thread_id is None:
            self.thread_id = threading.get_ident()
        was_tracing = _acquire(self.max_frames)
        self._baseline = self._counts() if was_tracing else collections.Counter()
        self._reported = None
        self._last = self._baseline
        self._sink = sink

    def disable(self):
        # type: () -> None
        if self._sink is None:
            return
        self._sink = None
        self._walks.clear()
        _release()

    def flush(self):
        # type: () -> None
        sink = self._sink
        if sink is None:
            return
        counts = self._counts()
        now = time.monotonic_ns()
        baseline = self._baseline

        if not self.report_frees:
            self._report_new(sink, counts, now)
            return

        if self._reported is None:
            self._reported = {}
            for group, count in counts.items():
                new = count - baseline.get(group, 0)
                if new <= 0:
                    continue
                self._reported[group] = new
                traceback, size = group
                walk = self._walk(traceback)
                for i in range(new):
                    sink.on_allocation(self.thread_id, walk, size, now, (group, i))
            LOG.debug("Reported %d traced allocations", sum(self._reported.values()))
            return

        for group, reported in self._reported.items():
            alive = max(counts.get(group, 0) - baseline.get(group, 0), 0)
            survivors = min(reported, alive)
            for i in range(survivors, reported):
                sink.on_free((group, i), now)
            self._reported[group] = survivors

    def _report_new(self, sink, counts, now):
        # type: (EventSink, typing.Counter[GroupKey], int) -> None
        last = self._last
        reported = 0
        for group, count in counts.items():
            new = count - last.get(group, 0)
            if new <= 0:
                continue
            traceback, size = group
            walk = self._walk(traceback)
            for _ in range(new):
                sink.on_allocation(self.thread_id, walk, size, now)
            reported += new
        self._last = counts
        LOG.debug("Reported %d new traced allocations", reported)
