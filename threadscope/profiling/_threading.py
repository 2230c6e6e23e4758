import sys
import threading
import typing


def default_name(thread_id):
    # type: (int) -> str
    return "thread obj_id:%d" % thread_id


def pretty_name(thread):
    # type: (threading.Thread) -> str
    name = thread.name
    if name:
        return name
    if thread is threading.main_thread():
        return sys.argv[0] if sys.argv and sys.argv[0] else "MainThread"
    return default_name(thread.ident or id(thread))


class ThreadNames(object):
    """Names of every thread seen during a trace.

    Threads that exit during the trace disappear from `threading`, so names are recorded as threads are seen and
    kept after they exit. Unknown threads get a placeholder name.
    """

    def __init__(self):
        self._names = {}  # type: typing.Dict[int, str]

    def __getitem__(self, thread_id):
        # type: (int) -> str
        return self._names.get(thread_id) or default_name(thread_id)

    def __contains__(self, thread_id):
        return thread_id in self._names

    def update(self, names):
        # type: (typing.Mapping[int, str]) -> None
        for thread_id, name in names.items():
            if name:
                self._names[thread_id] = name
