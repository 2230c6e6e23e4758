import enum
import threading
import typing  # noqa:F401

import attr


class ServiceStatus(enum.Enum):
    """A Service status."""

    STOPPED = "stopped"
    RUNNING = "running"


class ServiceStatusError(RuntimeError):
    def __init__(
        self,
        service_cls,  # type: typing.Type[Service]
        current_status,  # type: ServiceStatus
        reason=None,  # type: typing.Optional[str]
    ):
        # type: (...) -> None
        self.current_status = current_status
        message = "%s is already in status %s" % (service_cls.__name__, current_status.value)
        if reason is not None:
            message = "%s: %s" % (message, reason)
        super(ServiceStatusError, self).__init__(message)


@attr.s(eq=False)
class Service(object):
    """A service that can be started or stopped."""

    status = attr.ib(default=ServiceStatus.STOPPED, type=ServiceStatus, init=False, eq=False)
    _service_lock = attr.ib(factory=threading.RLock, repr=False, init=False, eq=False)

    __status_error__ = ServiceStatusError  # type: typing.Type[ServiceStatusError]

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.stop()
        self.join()

    def start(self, *args, **kwargs):
        # type: (typing.Any, typing.Any) -> None
        """Start the service."""
        # Use a lock so we're sure that if 2 threads try to start the service at the same time, one of them will raise
        # an error.
        with self._service_lock:
            if self.status == ServiceStatus.RUNNING:
                raise self.__status_error__(self.__class__, self.status)
            self._start_service(*args, **kwargs)
            self.status = ServiceStatus.RUNNING

    def _start_service(self, *args, **kwargs):
        # type: (typing.Any, typing.Any) -> None
        """Start the service for real.

        This method uses the internal lock to be sure there's no race conditions and that the service is really started
        once start() returns.

        """

    def stop(self, *args, **kwargs):
        # type: (typing.Any, typing.Any) -> typing.Any
        """Stop the service."""
        with self._service_lock:
            if self.status == ServiceStatus.STOPPED:
                raise self.__status_error__(self.__class__, self.status)
            try:
                return self._stop_service(*args, **kwargs)
            finally:
                self.status = ServiceStatus.STOPPED

    def _stop_service(self, *args, **kwargs):
        # type: (typing.Any, typing.Any) -> typing.Any
        """Stop the service for real."""

    @staticmethod
    def join(timeout=None):
        """Join the service once stopped."""
