import enum
import typing

import attr


class MarkerPhase(enum.IntEnum):
    """Phase of a marker. Values match the phases of the Gecko profile format."""

    INSTANT = 0
    INTERVAL = 1
    INTERVAL_START = 2
    INTERVAL_END = 3


class MarkerType(enum.Enum):
    THREAD_RUNNING = "thread running"
    THREAD_STALLED = "thread stalled"
    THREAD_SUSPENDED = "thread suspended"
    THREAD_EXITED = "thread exited"
    FIBER_SWITCH = "fiber switch"
    GC_ENTER = "GC enter"
    GC_EXIT = "GC exit"
    GC_PAUSE = "GC pause"
    FIBER_RUNNING = "fiber running"
    USER = "user"


SCHEDULER_MARKERS = frozenset(
    (
        MarkerType.THREAD_RUNNING,
        MarkerType.THREAD_STALLED,
        MarkerType.THREAD_SUSPENDED,
        MarkerType.THREAD_EXITED,
    )
)


class SampleCategory(enum.Enum):
    """What a thread was doing when it got sampled."""

    RUNNING = "running"
    IDLE = "idle"
    STALLED = "stalled"
    GC = "gc"


_CATEGORY_BY_SCHEDULER_MARKER = {
    MarkerType.THREAD_RUNNING: SampleCategory.RUNNING,
    MarkerType.THREAD_STALLED: SampleCategory.STALLED,
    MarkerType.THREAD_SUSPENDED: SampleCategory.IDLE,
    MarkerType.THREAD_EXITED: SampleCategory.IDLE,
}


def category_for(last_scheduler_marker, in_gc):
    # type: (typing.Optional[MarkerType], bool) -> SampleCategory
    """Return the category of a sample taken after ``last_scheduler_marker``."""
    if in_gc:
        return SampleCategory.GC
    if last_scheduler_marker is None:
        return SampleCategory.RUNNING
    return _CATEGORY_BY_SCHEDULER_MARKER[last_scheduler_marker]


def _check_end(instance, attribute, value):
    if instance.phase == MarkerPhase.INSTANT:
        if value is not None:
            raise ValueError("An instant marker cannot have an end time")
    elif instance.phase == MarkerPhase.INTERVAL:
        if value is None:
            raise ValueError("An interval marker must have an end time")
        if value < instance.start:
            raise ValueError("An interval marker cannot end (%d) before it starts (%d)" % (value, instance.start))


@attr.s(frozen=True, slots=True)
class Marker(object):
    """A timestamped event or interval on the timeline of a thread."""

    thread_id = attr.ib(type=int)
    type = attr.ib(type=MarkerType, converter=MarkerType)
    start = attr.ib(type=int)
    end = attr.ib(type=typing.Optional[int], default=None, validator=_check_end)
    phase = attr.ib(type=MarkerPhase, default=MarkerPhase.INSTANT, converter=MarkerPhase)
    name = attr.ib(type=typing.Optional[str], default=None)
    payload = attr.ib(type=typing.Optional[typing.Dict[str, typing.Any]], default=None, eq=False)
    stack_id = attr.ib(type=typing.Optional[int], default=None)
    seq = attr.ib(type=int, default=0)

    @property
    def label(self):
        # type: () -> str
        return self.name if self.name is not None else self.type.value

    @property
    def duration(self):
        # type: () -> typing.Optional[int]
        if self.end is None:
            return None
        return self.end - self.start

    def to_dict(self):
        # type: () -> typing.Dict[str, typing.Any]
        return {
            "thread_id": self.thread_id,
            "type": self.type.value,
            "name": self.label,
            "start": self.start,
            "end": self.end,
            "phase": int(self.phase),
            "data": self.payload,
            "stack": self.stack_id,
        }
