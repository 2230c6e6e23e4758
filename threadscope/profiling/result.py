# -*- encoding: utf-8 -*-
import time
import types
import typing

import attr

from threadscope.internal.logger import get_logger
from threadscope.profiling import _threading
from threadscope.profiling import event
from threadscope.profiling import stitching
from threadscope.profiling.stack_table import Backtrace
from threadscope.profiling.stack_table import StackInterner
from threadscope.profiling.stack_table import StackTableSnapshot
from threadscope.profiling.stack_table import StackView


if typing.TYPE_CHECKING:  # pragma: no cover
    from threadscope.profiling._threading import ThreadNames
    from threadscope.profiling.recorder import ThreadRecorder


LOG = get_logger(__name__)


@attr.s(frozen=True, slots=True)
class Meta(object):
    """Metadata of a trace. Times are nanoseconds of the monotonic clock, except ``started_at``."""

    mode = attr.ib(type=str)
    pid = attr.ib(type=int)
    start_time = attr.ib(type=int)
    end_time = attr.ib(type=int)
    started_at = attr.ib(type=int, default=None)
    interval = attr.ib(type=typing.Optional[int], default=None)
    allocation_sample_rate = attr.ib(type=typing.Optional[int], default=None)
    gc = attr.ib(type=bool, default=False)
    hooks = attr.ib(type=typing.Tuple[str, ...], default=(), converter=tuple)

    def to_dict(self):
        # type: () -> typing.Dict[str, typing.Any]
        return attr.asdict(self, recurse=False, retain_collection_types=False)


@attr.s(frozen=True, slots=True)
class AllocationData(object):
    samples = attr.ib(type=typing.Tuple[int, ...], converter=tuple)
    weights = attr.ib(type=typing.Tuple[int, ...], converter=tuple)
    timestamps = attr.ib(type=typing.Tuple[int, ...], converter=tuple)

    def to_dict(self):
        # type: () -> typing.Dict[str, typing.List[int]]
        return {
            "samples": list(self.samples),
            "weights": list(self.weights),
            "timestamps": list(self.timestamps),
        }


@attr.s(frozen=True, slots=True)
class ThreadData(object):
    """Everything recorded about one thread."""

    tid = attr.ib(type=int)
    name = attr.ib(type=str)
    started_at = attr.ib(type=int)
    stopped_at = attr.ib(type=int)
    is_main = attr.ib(type=bool)
    samples = attr.ib(type=typing.Tuple[int, ...], converter=tuple)
    weights = attr.ib(type=typing.Tuple[int, ...], converter=tuple)
    timestamps = attr.ib(type=typing.Tuple[int, ...], converter=tuple)
    categories = attr.ib(type=typing.Tuple[event.SampleCategory, ...], converter=tuple)
    markers = attr.ib(type=typing.Tuple[event.Marker, ...], converter=tuple)
    allocations = attr.ib(type=typing.Optional[AllocationData], default=None)

    def to_dict(self):
        # type: () -> typing.Dict[str, typing.Any]
        return {
            "tid": self.tid,
            "name": self.name,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "is_main": self.is_main,
            "samples": list(self.samples),
            "weights": list(self.weights),
            "timestamps": list(self.timestamps),
            "sample_categories": [category.value for category in self.categories],
            "markers": [marker.to_dict() for marker in self.markers],
            "allocations": self.allocations.to_dict() if self.allocations is not None else None,
        }


class _EachSample(object):
    """Restartable iteration over the ``(stack, weight)`` pairs of a result."""

    __slots__ = ("_result",)

    def __init__(self, result):
        # type: (Result) -> None
        self._result = result

    def __iter__(self):
        # type: () -> typing.Iterator[typing.Tuple[StackView, int]]
        stack_table = self._result.stack_table
        for thread in self._result.all_threads():
            for stack_idx, weight in zip(thread.samples, thread.weights):
                yield stack_table.stack(stack_idx), weight

    def __len__(self):
        return self._result.total_samples()


@attr.s(frozen=True, eq=False, repr=False)
class Result(object):
    """The outcome of a trace.

    A result is a value: it is created once when a collector stops and never changes afterwards, so it can be read
    from any number of threads.

    ``threads`` maps each thread id to the last thread that had it. Threads whose id got reused by a later thread
    during the trace are in ``exited_threads``, in the order they exited. Sample and marker queries cover both.
    """

    threads = attr.ib(type=typing.Mapping[int, ThreadData])
    stack_table = attr.ib(type=StackTableSnapshot, repr=False)
    meta = attr.ib(type=Meta)
    counters = attr.ib(type=typing.Mapping[str, typing.Any], factory=dict, repr=False)
    marker_schema = attr.ib(type=typing.Tuple[typing.Dict[str, typing.Any], ...], factory=tuple, repr=False)
    exited_threads = attr.ib(type=typing.Tuple[ThreadData, ...], factory=tuple, converter=tuple)

    def __attrs_post_init__(self):
        object.__setattr__(self, "threads", types.MappingProxyType(dict(self.threads)))
        object.__setattr__(self, "counters", types.MappingProxyType(dict(self.counters)))
        object.__setattr__(self, "marker_schema", tuple(self.marker_schema))

    def __repr__(self):
        return "<%s %.3f seconds, %d threads, %d samples, %d unique>" % (
            self.__class__.__name__,
            self.elapsed_seconds,
            len(self.threads) + len(self.exited_threads),
            self.total_samples(),
            self.total_unique_samples(),
        )

    @property
    def mode(self):
        # type: () -> str
        return self.meta.mode

    @property
    def pid(self):
        # type: () -> int
        return self.meta.pid

    @property
    def main_thread(self):
        # type: () -> typing.Optional[ThreadData]
        for thread in self.threads.values():
            if thread.is_main:
                return thread
        return None

    @property
    def started_at(self):
        # type: () -> int
        """Wall-clock time at which the trace started, in nanoseconds since the epoch."""
        if self.meta.started_at is not None:
            return self.meta.started_at
        return time.time_ns() - time.monotonic_ns() + self.meta.start_time

    @property
    def elapsed_seconds(self):
        # type: () -> float
        return (self.meta.end_time - self.meta.start_time) / 1e9

    def all_threads(self):
        # type: () -> typing.Iterator[ThreadData]
        for thread in self.exited_threads:
            yield thread
        for thread in self.threads.values():
            yield thread

    @property
    def samples(self):
        # type: () -> typing.Tuple[int, ...]
        return tuple(stack_idx for thread in self.all_threads() for stack_idx in thread.samples)

    @property
    def weights(self):
        # type: () -> typing.Tuple[int, ...]
        return tuple(weight for thread in self.all_threads() for weight in thread.weights)

    @property
    def timestamps(self):
        # type: () -> typing.Tuple[int, ...]
        return tuple(ts for thread in self.all_threads() for ts in thread.timestamps)

    @property
    def markers(self):
        # type: () -> typing.Tuple[event.Marker, ...]
        return tuple(marker for thread in self.all_threads() for marker in thread.markers)

    def each_sample(self):
        # type: () -> _EachSample
        """Return the ``(stack, weight)`` pairs of every sample of every thread.

        The returned object can be iterated several times.
        """
        return _EachSample(self)

    def stack(self, idx):
        # type: (int) -> StackView
        return self.stack_table.stack(idx)

    def backtrace(self, idx):
        # type: (int) -> Backtrace
        return self.stack_table.backtrace(idx)

    def total_weights(self):
        # type: () -> int
        return sum(sum(thread.weights) for thread in self.all_threads())

    def total_bytes(self):
        # type: () -> int
        """Return the number of bytes still alive at the end of a retained-mode trace."""
        if self.meta.mode != "retained":
            raise NotImplementedError("total_bytes is only implemented for retained mode")
        return self.total_weights()

    def total_samples(self):
        # type: () -> int
        return sum(len(thread.samples) for thread in self.all_threads())

    def total_unique_samples(self):
        # type: () -> int
        return len({stack_idx for thread in self.all_threads() for stack_idx in thread.samples})

    def to_dict(self):
        # type: () -> typing.Dict[str, typing.Any]
        return {
            "meta": self.meta.to_dict(),
            "threads": {tid: thread.to_dict() for tid, thread in self.threads.items()},
            "exited_threads": [thread.to_dict() for thread in self.exited_threads],
            "counters": dict(self.counters),
            "marker_schema": list(self.marker_schema),
            **self.stack_table.to_dict(),
        }


def _thread_data(tid, thread, name, is_main, meta, stack_table):
    # type: (int, ThreadRecorder, str, bool, Meta, StackTableSnapshot) -> ThreadData
    stack_table.check_stack_ids(thread.samples, "sample")
    stack_table.check_stack_ids(thread.allocation_samples, "allocation")
    stack_table.check_stack_ids((marker.stack_id for marker in thread.markers), "marker")

    stopped_at = thread.stopped_at if thread.stopped_at is not None else meta.end_time
    started_at = thread.started_at if thread.started_at is not None else meta.start_time
    allocations = None
    if thread.allocation_samples:
        allocations = AllocationData(thread.allocation_samples, thread.allocation_weights, thread.allocation_timestamps)
    return ThreadData(
        tid=tid,
        name=name,
        started_at=started_at,
        stopped_at=min(stopped_at, meta.end_time),
        is_main=is_main,
        samples=thread.samples,
        weights=thread.weights,
        timestamps=thread.timestamps,
        categories=thread.categories,
        markers=stitching.stitch_markers(thread.markers, meta.end_time),
        allocations=allocations,
    )


def assemble(
    meta,  # type: Meta
    threads,  # type: typing.Mapping[int, ThreadRecorder]
    interner,  # type: StackInterner
    thread_names,  # type: ThreadNames
    main_thread_id,  # type: typing.Optional[int]
    counters=None,  # type: typing.Optional[typing.Mapping[str, typing.Any]]
    marker_schema=(),  # type: typing.Iterable[typing.Dict[str, typing.Any]]
    check_integrity=False,  # type: bool
    exited_threads=(),  # type: typing.Iterable[ThreadRecorder]
):
    # type: (...) -> Result
    """Freeze the recorded streams of a trace into a `Result`.

    :param exited_threads: The records of threads that exited before a later thread reused their id.
    :raise IntegrityViolation: if a sample or marker points to a stack that does not exist.
    """
    stack_table = interner.snapshot()
    if check_integrity:
        stack_table.check_integrity()

    data = {}  # type: typing.Dict[int, ThreadData]
    for tid, thread in threads.items():
        data[tid] = _thread_data(tid, thread, thread_names[tid], tid == main_thread_id, meta, stack_table)

    exited = tuple(
        _thread_data(
            thread.tid, thread, thread.name or _threading.default_name(thread.tid), False, meta, stack_table
        )
        for thread in exited_threads
    )

    LOG.debug(
        "Assembled result of %d threads (%d exited) and %d stacks", len(data), len(exited), stack_table.stack_count
    )
    return Result(
        threads=data,
        stack_table=stack_table,
        meta=meta,
        counters=counters or {},
        marker_schema=tuple(marker_schema),
        exited_threads=exited,
    )
