# -*- encoding: utf-8 -*-
import itertools

from hypothesis import given
from hypothesis import strategies as st

from threadscope.profiling import event
from threadscope.profiling.stitching import stitch_markers


T = event.MarkerType


def _markers(*entries):
    """Build raw markers from ``(type, start)`` or ``(type, start, payload)`` tuples, in push order."""
    markers = []
    for seq, entry in enumerate(entries):
        payload = entry[2] if len(entry) > 2 else None
        markers.append(event.Marker(thread_id=1, type=entry[0], start=entry[1], payload=payload, seq=seq))
    return markers


def _types(markers):
    return [m.type for m in markers]


unrelated = st.sampled_from([T.THREAD_RUNNING, T.THREAD_STALLED, T.THREAD_SUSPENDED, T.USER])


@given(
    st.integers(min_value=0, max_value=10**9),
    st.integers(min_value=0, max_value=10**9),
    st.lists(unrelated, max_size=10),
    st.lists(unrelated, max_size=5),
)
def test_gc_pause(t0, duration, between, around):
    t1 = t0 + duration
    entries = [(t, t0) for t in around]
    entries.append((T.GC_ENTER, t0))
    entries.extend((t, t0 + duration // 2) for t in between)
    entries.append((T.GC_EXIT, t1))
    stitched = stitch_markers(_markers(*entries), end_time=t1 + 1)

    pauses = [m for m in stitched if m.type == T.GC_PAUSE]
    assert len(pauses) == 1
    assert (pauses[0].start, pauses[0].end) == (t0, t1)
    assert pauses[0].phase == event.MarkerPhase.INTERVAL
    assert T.GC_ENTER not in _types(stitched)
    assert T.GC_EXIT not in _types(stitched)
    assert len(stitched) == len(between) + len(around) + 1


def test_gc_pause_payload():
    stitched = stitch_markers(
        _markers(
            (T.GC_ENTER, 10, {"generation": 2}),
            (T.GC_EXIT, 20, {"generation": 2, "collected": 5, "uncollectable": 0}),
        ),
        end_time=100,
    )
    assert len(stitched) == 1
    assert stitched[0].payload == {"generation": 2, "collected": 5, "uncollectable": 0}


def test_gc_unmatched_enter_closes_at_end_time():
    stitched = stitch_markers(_markers((T.GC_ENTER, 10), (T.USER, 12)), end_time=100)
    assert _types(stitched) == [T.GC_PAUSE, T.USER]
    assert (stitched[0].start, stitched[0].end) == (10, 100)


def test_gc_orphan_exit_dropped():
    stitched = stitch_markers(_markers((T.GC_EXIT, 10), (T.USER, 12)), end_time=100)
    assert _types(stitched) == [T.USER]


def test_gc_pairs_in_order():
    stitched = stitch_markers(
        _markers((T.GC_ENTER, 10), (T.GC_ENTER, 11), (T.GC_EXIT, 20), (T.GC_EXIT, 30)),
        end_time=100,
    )
    assert [(m.start, m.end) for m in stitched] == [(10, 20), (11, 30)]


def test_tie_break_by_push_order():
    # Same timestamps everywhere: only the push order tells enter from exit
    markers = _markers((T.GC_ENTER, 10), (T.GC_EXIT, 10))
    for permutation in itertools.permutations(markers):
        stitched = stitch_markers(permutation, end_time=100)
        assert [(m.type, m.start, m.end) for m in stitched] == [(T.GC_PAUSE, 10, 10)]

    # Exit pushed first: it is an orphan and the enter runs until the end of the trace
    stitched = stitch_markers(_markers((T.GC_EXIT, 10), (T.GC_ENTER, 10)), end_time=100)
    assert [(m.type, m.start, m.end) for m in stitched] == [(T.GC_PAUSE, 10, 100)]


def test_exit_timestamp_before_enter():
    stitched = stitch_markers(_markers((T.GC_ENTER, 10), (T.GC_EXIT, 9)), end_time=100)
    assert [(m.start, m.end) for m in stitched] == [(10, 10)]


def test_fiber_running():
    stitched = stitch_markers(
        _markers(
            (T.FIBER_SWITCH, 10, {"fiber_id": 1}),
            (T.THREAD_RUNNING, 15),
            (T.FIBER_SWITCH, 20, {"fiber_id": 2}),
        ),
        end_time=30,
    )
    assert _types(stitched) == [T.FIBER_RUNNING, T.THREAD_RUNNING, T.FIBER_RUNNING]
    first, _, last = stitched
    assert (first.start, first.end, first.payload) == (10, 20, {"fiber_id": 1})
    assert (last.start, last.end, last.payload) == (20, 30, {"fiber_id": 2})
    assert T.FIBER_SWITCH not in _types(stitched)


def test_user_markers_verbatim():
    user = [
        event.Marker(thread_id=1, type=T.USER, start=5, name="a", payload={"x": 1}, seq=0),
        event.Marker(
            thread_id=1, type=T.USER, start=1, end=50, phase=event.MarkerPhase.INTERVAL, name="b", seq=1
        ),
    ]
    stitched = stitch_markers(user, end_time=100)
    assert stitched[0] is user[1]
    assert stitched[1] is user[0]


def test_sorted_by_start_then_push_order():
    stitched = stitch_markers(
        _markers((T.USER, 30), (T.GC_ENTER, 10), (T.USER, 10), (T.GC_EXIT, 20), (T.THREAD_STALLED, 5)),
        end_time=100,
    )
    assert [(m.type, m.start) for m in stitched] == [
        (T.THREAD_STALLED, 5),
        (T.GC_PAUSE, 10),
        (T.USER, 10),
        (T.USER, 30),
    ]


def test_empty():
    assert stitch_markers([], end_time=10) == []
