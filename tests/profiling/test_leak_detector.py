import time

import pytest

from threadscope.profiling import collector
from threadscope.profiling import leak_detector
from threadscope.profiling.runtime import EventSource
from tests.profiling.utils import FakeEventSource


def leak():
    return [bytearray(2048) for _ in range(50)]


def test_leak_detector():
    leaked = []
    detector = leak_detector.start_thread(0.5, 0.1, gc=False)
    deadline = time.monotonic() + 5
    while detector._collector.state is collector.CollectorState.IDLE and time.monotonic() < deadline:
        time.sleep(0.01)
    leaked.append(leak())
    res = detector.result(timeout=10)
    assert res is not None
    assert res.mode == "retained"
    leaked_bytes = sum(
        weight for stack, weight in res.each_sample() if any(frame.name == "leak" for frame in stack.frames)
    )
    assert leaked_bytes >= 50 * 2048
    assert detector.result() is res


def test_result_before_start():
    detector = leak_detector.MemoryLeakDetector(0.1, 0.1, event_source=FakeEventSource())
    assert detector.result() is None
    assert "collect_time=0.1" in repr(detector)


def test_result_timeout():
    detector = leak_detector.start_thread(1, 0, event_source=FakeEventSource(), gc=False)
    assert detector.result(timeout=0.01) is None
    # Wait for the background trace so it does not outlive the test
    assert detector.result().mode == "retained"


def test_started_twice():
    detector = leak_detector.start_thread(0, 0, event_source=FakeEventSource(), gc=False)
    with pytest.raises(RuntimeError):
        detector.start_thread()
    detector.result()


def test_invalid_options():
    with pytest.raises(collector.ConfigurationError):
        leak_detector.MemoryLeakDetector(0.1, 0.1, interval=1000)
    with pytest.raises(collector.ConfigurationError):
        leak_detector.MemoryLeakDetector(0.1, 0.1, max_frames=0)


def test_failure_is_reraised():
    class Broken(EventSource):
        def enable(self, sink):
            pass

        def disable(self):
            pass

        def flush(self):
            raise RuntimeError("boom")

    detector = leak_detector.start_thread(0, 0, event_source=FakeEventSource(), allocation_source=Broken(), gc=False)
    with pytest.raises(RuntimeError, match="boom"):
        detector.result(timeout=10)
