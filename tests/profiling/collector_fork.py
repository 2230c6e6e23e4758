import os
import sys
import time

import threadscope
from threadscope.profiling import event


handle = threadscope.start("wall", interval=1000)
coll = handle.collector
time.sleep(0.05)

pid = os.fork()

if pid == 0:
    assert coll.paused
    assert coll.add_marker("child", coll.current_time()) is None
    res = threadscope.stop(handle)
    assert res.pid == os.getpid()
    assert not [m for m in res.markers if m.type is event.MarkerType.USER]
else:
    assert not coll.paused
    marker = coll.add_marker("parent", coll.current_time())
    time.sleep(0.05)
    res = threadscope.stop(handle)
    assert res.total_samples() > 0
    assert [m.name for m in res.markers if m.type is event.MarkerType.USER] == ["parent"]
    assert marker in res.markers
    pid, status = os.waitpid(pid, 0)
    sys.exit(os.WEXITSTATUS(status))
