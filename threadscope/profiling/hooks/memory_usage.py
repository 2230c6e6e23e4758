import gc
import os
import threading
import time
import typing

import psutil

from threadscope.internal import periodic
from threadscope.internal.logger import get_logger
from threadscope.profiling import hooks
from threadscope.settings.profiling import config


LOG = get_logger(__name__)


def _gc_collections():
    # type: () -> int
    return sum(stats["collections"] for stats in gc.get_stats())


class MemoryUsageHook(hooks.Hook):
    """Record the resident memory of the process while a trace runs.

    The memory is read every ``interval`` seconds from a profiler thread, which the collectors never sample. The
    readings end up as the ``memory`` counter of the result: the change of resident memory in bytes and the number of
    garbage collections since the previous reading.
    """

    def __init__(self, collector, interval=None):
        # type: (typing.Any, typing.Optional[float]) -> None
        super(MemoryUsageHook, self).__init__(collector)
        self.interval = config.memory_usage_interval if interval is None else interval
        self._process = psutil.Process(os.getpid())
        self._lock = threading.Lock()
        self._worker = None  # type: typing.Optional[periodic.PeriodicThread]
        self._timestamps = []  # type: typing.List[int]
        self._memory = []  # type: typing.List[int]
        self._collections = []  # type: typing.List[int]
        self._last_memory = 0
        self._last_collections = 0

    def enable(self):
        # type: () -> None
        self._last_collections = _gc_collections()
        self._read()
        self._worker = periodic.PeriodicThread(
            self.interval,
            target=self._read,
            name="threadscope:%s" % self.__class__.__name__,
        )
        self._worker.start()

    def disable(self):
        # type: () -> None
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.stop()
        if worker is not threading.current_thread():
            worker.join()
        self._read()

    def _read(self):
        # type: () -> None
        try:
            rss = self._process.memory_info().rss
        except psutil.Error:
            LOG.debug("Unable to read the resident memory of the process", exc_info=True)
            return
        collections = _gc_collections()
        with self._lock:
            self._memory.append(rss - self._last_memory)
            self._collections.append(collections - self._last_collections)
            self._timestamps.append(time.monotonic_ns())
            self._last_memory = rss
            self._last_collections = collections

    def counters(self):
        # type: () -> typing.Dict[str, typing.Any]
        with self._lock:
            return {
                "memory": {
                    "name": "memory",
                    "category": "Memory",
                    "description": "Resident memory of the process in bytes",
                    "pid": os.getpid(),
                    "samples": {
                        "time": [ts / 1e6 for ts in self._timestamps],
                        "count": list(self._memory),
                        "number": list(self._collections),
                        "length": len(self._timestamps),
                    },
                }
            }
