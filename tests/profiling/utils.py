import typing

from threadscope.profiling.runtime import RuntimeEventSource
from threadscope.profiling.stack_table import FuncKey


MAIN_TID = 1
OTHER_TID = 2


def walk(*names, **kwargs):
    """Build a walk of functions of a fake file, innermost first."""
    filename = kwargs.get("filename", "app.py")
    line = kwargs.get("line", 10)
    return tuple((FuncKey(name, filename, i * 100 + 1), line + i) for i, name in enumerate(names))


class FakeEventSource(RuntimeEventSource):
    """A runtime event source driven by the test.

    Notifications are delivered to the sink right away through `emit`, walks are whatever the test puts in
    ``walks``. A `None` walk emulates a thread that cannot be captured.
    """

    def __init__(self, walks=None, names=None, main_thread_id=MAIN_TID, current_thread_id=MAIN_TID):
        self.walks = dict(walks or {})  # type: typing.Dict[int, typing.Any]
        self.names = dict(names or {})  # type: typing.Dict[int, str]
        self._main_thread_id = main_thread_id
        self._current_thread_id = current_thread_id
        self.sink = None
        self.enabled = 0
        self.disabled = 0
        self.flushed = 0

    def enable(self, sink):
        self.sink = sink
        self.enabled += 1

    def disable(self):
        self.sink = None
        self.disabled += 1

    def flush(self):
        self.flushed += 1

    def emit(self, method, *args, **kwargs):
        assert self.sink is not None, "source is not enabled"
        return getattr(self.sink, method)(*args, **kwargs)

    def thread_walks(self, ignore=frozenset()):
        return [(tid, w) for tid, w in self.walks.items() if tid not in ignore]

    def thread_names(self):
        return dict(self.names)

    def main_thread_id(self):
        return self._main_thread_id

    def current_thread_id(self):
        return self._current_thread_id


class RecordingSink(object):
    """An event sink keeping every notification it receives."""

    def __init__(self):
        self.calls = []  # type: typing.List[typing.Tuple[typing.Any, ...]]

    def _record(name):
        def method(self, *args):
            self.calls.append((name,) + args)

        method.__name__ = name
        return method

    on_thread_started = _record("on_thread_started")
    on_thread_exited = _record("on_thread_exited")
    on_scheduler_event = _record("on_scheduler_event")
    on_fiber_switch = _record("on_fiber_switch")
    on_gc_event = _record("on_gc_event")
    on_allocation = _record("on_allocation")
    on_free = _record("on_free")

    del _record

    def of(self, name):
        return [call[1:] for call in self.calls if call[0] == name]
