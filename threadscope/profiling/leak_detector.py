import threading
import time
import typing

from threadscope.internal.logger import get_logger
from threadscope.profiling import collector


if typing.TYPE_CHECKING:  # pragma: no cover
    from threadscope.profiling.result import Result


LOG = get_logger(__name__)


class MemoryLeakDetector(object):
    """Run a retained-mode trace in the background.

    The trace collects for ``collect_time`` seconds, drains for ``drain_time`` seconds, then stops. What is left in
    the result is memory allocated during the first period and still alive at the end of the second one.
    """

    def __init__(self, collect_time, drain_time, **collector_options):
        # type: (float, float, typing.Any) -> None
        self.collect_time = collect_time
        self.drain_time = drain_time
        self.collector_options = collector_options
        # Fail now rather than in the background thread
        self._collector = collector.create_collector("retained", **collector_options)
        self._thread = None  # type: typing.Optional[threading.Thread]
        self._result = None  # type: typing.Optional[Result]
        self._exception = None  # type: typing.Optional[BaseException]

    def __repr__(self):
        return "<%s collect_time=%r drain_time=%r>" % (self.__class__.__name__, self.collect_time, self.drain_time)

    def start_thread(self):
        # type: () -> None
        if self._thread is not None:
            raise RuntimeError("%r already started" % self)
        self._thread = threading.Thread(target=self._run, name="threadscope:MemoryLeakDetector")
        self._thread.daemon = True
        self._thread.start()

    def _run(self):
        # type: () -> None
        coll = self._collector
        try:
            coll.start()
            try:
                time.sleep(self.collect_time)
                coll.drain()  # type: ignore[attr-defined]
                time.sleep(self.drain_time)
            finally:
                self._result = coll.stop()
        except BaseException as e:
            LOG.debug("Memory leak detector failed", exc_info=True)
            self._exception = e

    def result(self, timeout=None):
        # type: (typing.Optional[float]) -> typing.Optional[Result]
        """Wait for the trace to finish and return its result.

        :return: The result, or `None` if the trace did not finish within ``timeout``.
        :raise: Whatever exception stopped the trace.
        """
        if self._thread is None:
            return None
        self._thread.join(timeout)
        if self._thread.is_alive():
            return None
        if self._exception is not None:
            raise self._exception
        return self._result


def start_thread(collect_time, drain_time, **collector_options):
    # type: (float, float, typing.Any) -> MemoryLeakDetector
    """Create a `MemoryLeakDetector` and start its thread."""
    detector = MemoryLeakDetector(collect_time, drain_time, **collector_options)
    detector.start_thread()
    return detector
