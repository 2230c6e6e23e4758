# -*- encoding: utf-8 -*-
import threading
import typing  # noqa:F401

from . import forksafe


# Idents of the periodic threads currently running. Samplers never capture these.
PERIODIC_THREAD_IDS = set()  # type: typing.Set[int]


class PeriodicThread(threading.Thread):
    """Periodic thread.

    This class can be used to instantiate a worker thread that will run its `target` function every `interval`
    seconds.

    """

    _threadscope_profiling_ignore = True

    def __init__(
        self,
        interval,  # type: float
        target,  # type: typing.Callable[[], typing.Any]
        name=None,  # type: typing.Optional[str]
        on_shutdown=None,  # type: typing.Optional[typing.Callable[[], typing.Any]]
    ):
        # type: (...) -> None
        """Create a periodic thread.

        :param interval: The interval in seconds to wait between execution of the periodic function.
        :param target: The periodic function to execute every interval.
        :param name: The name of the thread.
        :param on_shutdown: The function to call when the thread shuts down.
        """
        super(PeriodicThread, self).__init__(name=name)
        self._target = target
        self._on_shutdown = on_shutdown
        self.interval = interval
        self.quit = forksafe.Event()
        self.daemon = True

    def start(self):
        # type: () -> None
        """Start the thread."""
        super(PeriodicThread, self).start()
        PERIODIC_THREAD_IDS.add(self.ident)

    def stop(self):
        # type: () -> None
        """Stop the thread."""
        # NOTE: make sure the thread is alive before using self.quit:
        # if we're a child trying to stop a Thread, the Event might have been
        # locked in the parent process while forking so that'd block forever
        if self.is_alive():
            self.quit.set()

    def run(self):
        # type: () -> None
        """Run the target function periodically."""
        try:
            while not self.quit.wait(self.interval):
                self._target()
            if self._on_shutdown is not None:
                self._on_shutdown()
        finally:
            PERIODIC_THREAD_IDS.discard(self.ident)
