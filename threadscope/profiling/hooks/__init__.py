"""Hooks feeding extra data into a trace.

A hook is built with the collector it serves, enabled when the collector starts and disabled when it stops. Once
disabled, its counters and marker schemas are copied into the result.

Hooks are selected with the ``hooks`` option of a collector, by registered name, by class or as an instance::

    threadscope.start("wall", hooks=["memory_usage"])

New kinds of hooks are made available by name with `register_hook`.
"""
import abc
import typing


class Hook(abc.ABC):
    """Capability interface of a hook."""

    #: The name the hook is registered under
    name = None  # type: typing.Optional[str]

    def __init__(self, collector):
        # type: (typing.Any) -> None
        self.collector = collector

    def __repr__(self):
        return "<%s name=%r>" % (self.__class__.__name__, self.name)

    @abc.abstractmethod
    def enable(self):
        # type: () -> None
        pass

    @abc.abstractmethod
    def disable(self):
        # type: () -> None
        """Stop the hook. Must be safe to call on a hook that was never enabled."""

    def counters(self):
        # type: () -> typing.Dict[str, typing.Any]
        """Return the counters gathered by the hook, by counter name."""
        return {}

    def marker_schema(self):
        # type: () -> typing.List[typing.Dict[str, typing.Any]]
        """Return the display schemas of the markers the hook adds."""
        return []


_HOOKS = {}  # type: typing.Dict[str, typing.Type[Hook]]


class UnknownHookError(KeyError):
    pass


def register_hook(name, hook_class):
    # type: (str, typing.Type[Hook]) -> typing.Type[Hook]
    """Make ``hook_class`` available as ``name`` in the ``hooks`` option of collectors."""
    if not (isinstance(hook_class, type) and issubclass(hook_class, Hook)):
        raise TypeError("%r does not implement the Hook interface" % (hook_class,))
    _HOOKS[name] = hook_class
    if hook_class.name is None:
        hook_class.name = name
    return hook_class


def unregister_hook(name):
    # type: (str) -> None
    del _HOOKS[name]


def get_hook_class(name):
    # type: (str) -> typing.Type[Hook]
    try:
        return _HOOKS[name]
    except KeyError:
        raise UnknownHookError("Unknown hook %r, expected one of %s" % (name, ", ".join(sorted(_HOOKS)))) from None


def registered_hooks():
    # type: () -> typing.List[str]
    return sorted(_HOOKS)


from . import memory_usage  # noqa:E402


register_hook("memory_usage", memory_usage.MemoryUsageHook)
