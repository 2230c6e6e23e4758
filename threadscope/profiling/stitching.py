"""Turn the raw marker stream of a thread into its final timeline.

Runtimes report GC phases and fiber switches as instant events. Once a trace stops, each thread's markers are
rewritten so that:

* a ``GC_ENTER`` and the nearest following unconsumed ``GC_EXIT`` become one ``GC_PAUSE`` interval;
* consecutive ``FIBER_SWITCH`` events become ``FIBER_RUNNING`` intervals;
* every other marker is kept as is.

Markers are processed in the order they were pushed (their ``seq``), never by timestamp, since several of them can
share a timestamp.
"""
import collections
import typing

import attr

from threadscope.internal.logger import get_logger

from . import event


log = get_logger(__name__)


def _merge_payloads(*payloads):
    # type: (typing.Optional[typing.Dict[str, typing.Any]]) -> typing.Optional[typing.Dict[str, typing.Any]]
    merged = {}  # type: typing.Dict[str, typing.Any]
    for payload in payloads:
        if payload:
            merged.update(payload)
    return merged or None


def _interval(marker, marker_type, end, payload):
    # type: (event.Marker, event.MarkerType, int, typing.Optional[typing.Dict[str, typing.Any]]) -> event.Marker
    return attr.evolve(
        marker,
        type=marker_type,
        end=max(end, marker.start),
        phase=event.MarkerPhase.INTERVAL,
        name=None,
        payload=payload,
    )


def stitch_markers(markers, end_time):
    # type: (typing.Iterable[event.Marker], int) -> typing.List[event.Marker]
    """Stitch the raw markers of one thread.

    :param markers: The raw markers of the thread, in any order.
    :param end_time: The time at which the trace stopped, used to close what is still open.
    :return: The stitched markers, sorted by start time then push order.
    """
    stitched = []  # type: typing.List[event.Marker]
    gc_enters = collections.deque()  # type: typing.Deque[event.Marker]
    fiber_switch = None  # type: typing.Optional[event.Marker]
    orphan_exits = 0

    for marker in sorted(markers, key=lambda m: m.seq):
        if marker.type == event.MarkerType.GC_ENTER:
            gc_enters.append(marker)
        elif marker.type == event.MarkerType.GC_EXIT:
            if gc_enters:
                enter = gc_enters.popleft()
                stitched.append(
                    _interval(
                        enter,
                        event.MarkerType.GC_PAUSE,
                        marker.start,
                        _merge_payloads(enter.payload, marker.payload),
                    )
                )
            else:
                orphan_exits += 1
        elif marker.type == event.MarkerType.FIBER_SWITCH:
            if fiber_switch is not None:
                stitched.append(
                    _interval(fiber_switch, event.MarkerType.FIBER_RUNNING, marker.start, fiber_switch.payload)
                )
            fiber_switch = marker
        else:
            stitched.append(marker)

    # Trace stopped in the middle of a GC
    for enter in gc_enters:
        stitched.append(_interval(enter, event.MarkerType.GC_PAUSE, end_time, enter.payload))

    if fiber_switch is not None:
        stitched.append(_interval(fiber_switch, event.MarkerType.FIBER_RUNNING, end_time, fiber_switch.payload))

    if orphan_exits:
        log.debug("Dropped %d GC exit markers without a matching enter", orphan_exits)

    stitched.sort(key=lambda m: (m.start, m.seq))
    return stitched
