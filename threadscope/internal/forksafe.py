"""
Fork-safety helpers.

A collector that is running when the process forks leaves the child with a copy of its interning tables, possibly
mid-mutation, and with locks in whatever state the parent's threads had them. None of the parent's threads (the
sampler included) exist in the child. This module lets collectors react to that:

* ``register`` hooks run in the child right after ``os.fork``;
* ``Lock``/``RLock``/``Event`` return proxies that are swapped for fresh primitives in the child.
"""
import os
import threading
import typing
import weakref

import wrapt

from threadscope.internal.logger import get_logger


log = get_logger(__name__)


_registry = []  # type: typing.List[typing.Callable[[], None]]


def _after_in_child():
    # type: () -> None
    # DEV: iterate over a copy so a hook registering another hook cannot loop forever
    for hook in list(_registry):
        try:
            hook()
        except Exception:
            # Mimic the behaviour of Python's fork hooks.
            log.exception("Exception ignored in forksafe hook %r", hook)


def register(after_in_child):
    # type: (typing.Callable[[], None]) -> typing.Callable[[], None]
    """Register a function to be called after fork in the child process.

    The hook stays registered in the child, so it also runs in grandchildren unless unregistered.
    """
    _registry.append(after_in_child)
    return after_in_child


def unregister(after_in_child):
    # type: (typing.Callable[[], None]) -> None
    """Unregister a function to be called after fork in the child process.

    Raises `ValueError` if the function was not registered.
    """
    _registry.remove(after_in_child)


if hasattr(os, "register_at_fork"):
    os.register_at_fork(after_in_child=_after_in_child)


_resetable_objects = weakref.WeakSet()  # type: weakref.WeakSet[ResetObject]


def _reset_objects():
    # type: (...) -> None
    for obj in list(_resetable_objects):
        try:
            obj._reset_object()
        except Exception:
            log.exception("Exception ignored in object reset forksafe hook %r", obj)


register(_reset_objects)


_T = typing.TypeVar("_T")


class ResetObject(wrapt.ObjectProxy, typing.Generic[_T]):
    """Proxy to a synchronization primitive that is replaced by a new instance in a forked child.

    A lock held by a sampler or allocation hook at fork time would stay held forever in the child since the thread
    owning it does not exist there.
    """

    def __init__(
        self, factory  # type: typing.Callable[[], _T]
    ):
        # type: (...) -> None
        super(ResetObject, self).__init__(factory())
        self._self_factory = factory
        _resetable_objects.add(self)

    def _reset_object(self):
        # type: (...) -> None
        self.__wrapped__ = self._self_factory()


def Lock():
    # type: (...) -> ResetObject[threading.Lock]
    return ResetObject(threading.Lock)


def RLock():
    # type: (...) -> ResetObject[threading.RLock]
    return ResetObject(threading.RLock)


def Event():
    # type: (...) -> ResetObject[threading.Event]
    return ResetObject(threading.Event)
