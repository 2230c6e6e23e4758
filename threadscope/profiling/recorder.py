# -*- encoding: utf-8 -*-
import itertools
import typing

from threadscope.internal import forksafe

from . import event


class _defaultdictkey(dict):
    """A variant of defaultdict that calls default_factory with the missing key as argument."""

    def __init__(self, default_factory=None):
        self.default_factory = default_factory

    def __missing__(self, key):
        if self.default_factory:
            v = self[key] = self.default_factory(key)
            return v
        raise KeyError(key)


class ThreadRecorder(object):
    """Columnar accumulators of one thread."""

    __slots__ = (
        "tid",
        "name",
        "started_at",
        "stopped_at",
        "samples",
        "weights",
        "timestamps",
        "categories",
        "markers",
        "allocation_samples",
        "allocation_weights",
        "allocation_timestamps",
        "last_scheduler_marker",
        "gc_depth",
    )

    def __init__(self, tid, started_at=None, name=None):
        # type: (int, typing.Optional[int], typing.Optional[str]) -> None
        self.tid = tid
        self.name = name
        self.started_at = started_at
        self.stopped_at = None  # type: typing.Optional[int]
        self.samples = []  # type: typing.List[int]
        self.weights = []  # type: typing.List[int]
        self.timestamps = []  # type: typing.List[int]
        self.categories = []  # type: typing.List[event.SampleCategory]
        self.markers = []  # type: typing.List[event.Marker]
        self.allocation_samples = []  # type: typing.List[int]
        self.allocation_weights = []  # type: typing.List[int]
        self.allocation_timestamps = []  # type: typing.List[int]
        self.last_scheduler_marker = None  # type: typing.Optional[event.MarkerType]
        self.gc_depth = 0

    def __repr__(self):
        return "<%s tid=%d samples=%d markers=%d>" % (
            self.__class__.__name__,
            self.tid,
            len(self.samples),
            len(self.markers),
        )

    @property
    def category(self):
        # type: () -> event.SampleCategory
        return event.category_for(self.last_scheduler_marker, self.gc_depth > 0)


class Recorder(object):
    """Per-thread sample, marker and allocation streams of one trace.

    Markers get a sequence number from a counter shared by every thread, so the order in which they were pushed can
    be recovered when several of them share a timestamp.

    The runtime reuses the ids of the threads that exited. When a new thread starts with the id of a thread that
    already stopped, the record of the stopped thread moves to `retired` and the new thread gets a fresh one.
    """

    def __init__(self, default_started_at=None):
        # type: (typing.Optional[int]) -> None
        self.default_started_at = default_started_at
        self.threads = _defaultdictkey(self._new_thread)  # type: typing.Dict[int, ThreadRecorder]
        self.retired = []  # type: typing.List[ThreadRecorder]
        self._seq = itertools.count()
        self._lock = forksafe.Lock()
        self.paused = False

        forksafe.register(self._after_fork)

    def __repr__(self):
        class_name = self.__class__.__name__
        attrs = {k: v for k, v in self.__dict__.items() if not k.startswith("_")}
        attrs_str = ", ".join(f"{k}={v!r}" for k, v in attrs.items())
        return f"<{class_name}({attrs_str})>"

    def _new_thread(self, tid):
        # type: (int) -> ThreadRecorder
        return ThreadRecorder(tid, self.default_started_at)

    def _after_fork(self):
        # type: (...) -> None
        # NOTE: do not try to push anything if the process forked: the tables we push into might have been in the
        # middle of a mutation when the fork happened.
        self.paused = True
        self.push_sample = self._push_noop  # type: ignore[assignment]
        self.push_marker = self._push_noop  # type: ignore[assignment]
        self.push_allocation = self._push_noop  # type: ignore[assignment]

    def _push_noop(self, *args, **kwargs):
        pass

    def close(self):
        # type: () -> None
        """Stop reacting to forks. The recorded data stays readable."""
        try:
            forksafe.unregister(self._after_fork)
        except ValueError:
            pass

    def thread_started(self, tid, timestamp, name=None):
        # type: (int, int, typing.Optional[str]) -> ThreadRecorder
        """Record that the thread ``tid`` started at ``timestamp``."""
        with self._lock:
            thread = self.threads.get(tid)
            if thread is not None and thread.stopped_at is not None:
                self.retired.append(thread)
                thread = None
            if thread is None:
                thread = self.threads[tid] = ThreadRecorder(tid, timestamp, name)
            else:
                if thread.started_at is None:
                    thread.started_at = timestamp
                if name:
                    thread.name = name
            return thread

    def thread_stopped(self, tid, timestamp, name=None):
        # type: (int, int, typing.Optional[str]) -> None
        with self._lock:
            thread = self.threads[tid]
            if thread.stopped_at is None:
                thread.stopped_at = timestamp
            if name:
                thread.name = name

    def push_sample(self, tid, stack_id, weight, timestamp, category=None):
        # type: (int, int, int, int, typing.Optional[event.SampleCategory]) -> None
        """Push a sample in the stream of the thread ``tid``.

        :param category: The category of the sample. Derived from the thread's scheduler state if not provided.
        """
        with self._lock:
            thread = self.threads[tid]
            thread.samples.append(stack_id)
            thread.weights.append(weight)
            thread.timestamps.append(timestamp)
            thread.categories.append(thread.category if category is None else category)

    def push_allocation(self, tid, stack_id, size, timestamp):
        # type: (int, int, int, int) -> None
        with self._lock:
            thread = self.threads[tid]
            thread.allocation_samples.append(stack_id)
            thread.allocation_weights.append(size)
            thread.allocation_timestamps.append(timestamp)

    def push_marker(
        self,
        tid,  # type: int
        marker_type,  # type: event.MarkerType
        start,  # type: int
        end=None,  # type: typing.Optional[int]
        phase=event.MarkerPhase.INSTANT,  # type: event.MarkerPhase
        name=None,  # type: typing.Optional[str]
        payload=None,  # type: typing.Optional[typing.Dict[str, typing.Any]]
        stack_id=None,  # type: typing.Optional[int]
    ):
        # type: (...) -> event.Marker
        """Push a marker in the timeline of the thread ``tid``.

        Scheduler and GC markers also update the state used to categorize the thread's next samples.

        :raise ValueError: if ``end`` does not fit ``phase``.
        """
        with self._lock:
            marker = event.Marker(
                thread_id=tid,
                type=marker_type,
                start=start,
                end=end,
                phase=phase,
                name=name,
                payload=payload,
                stack_id=stack_id,
                seq=next(self._seq),
            )
            thread = self.threads[tid]
            thread.markers.append(marker)
            if marker_type in event.SCHEDULER_MARKERS:
                thread.last_scheduler_marker = marker_type
            elif marker_type == event.MarkerType.GC_ENTER:
                thread.gc_depth += 1
            elif marker_type == event.MarkerType.GC_EXIT and thread.gc_depth > 0:
                thread.gc_depth -= 1
            return marker

    def reset(self):
        # type: () -> typing.Dict[int, ThreadRecorder]
        """Detach and return the recorded threads, starting anew with an empty recorder.

        :return: The recorded threads, by thread id.
        """
        with self._lock:
            threads = self.threads
            self.threads = _defaultdictkey(self._new_thread)
        return dict(threads)
