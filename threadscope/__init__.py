"""In-process profiler for CPython: wall-clock stack sampling and retained memory attribution.

Usage::

    import threadscope

    with threadscope.profile("wall") as p:
        work()
    for stack, weight in p.result.each_sample():
        ...
"""
from .version import __version__  # noqa:F401
from threadscope.profiling.collector import CaptureMiss
from threadscope.profiling.collector import CollectorError
from threadscope.profiling.collector import CollectorState
from threadscope.profiling.collector import ConfigurationError
from threadscope.profiling.collector import EventCollector
from threadscope.profiling.collector import StateError
from threadscope.profiling.collector import create_collector
from threadscope.profiling.event import MarkerPhase
from threadscope.profiling.event import MarkerType
from threadscope.profiling.event import SampleCategory
from threadscope.profiling.hooks import Hook
from threadscope.profiling.hooks import register_hook
from threadscope.profiling.leak_detector import MemoryLeakDetector
from threadscope.profiling.profiler import DEFAULT_KEY
from threadscope.profiling.profiler import Profile
from threadscope.profiling.profiler import TraceHandle
from threadscope.profiling.profiler import profile
from threadscope.profiling.profiler import start
from threadscope.profiling.profiler import stop
from threadscope.profiling.profiler import trace_retained
from threadscope.profiling.result import Result
from threadscope.profiling.stack_table import IntegrityViolation
from threadscope.profiling.stack_table import StackInterner


__all__ = [
    "__version__",
    "CaptureMiss",
    "CollectorError",
    "CollectorState",
    "ConfigurationError",
    "DEFAULT_KEY",
    "EventCollector",
    "Hook",
    "IntegrityViolation",
    "MarkerPhase",
    "MarkerType",
    "MemoryLeakDetector",
    "Profile",
    "Result",
    "SampleCategory",
    "StackInterner",
    "StateError",
    "TraceHandle",
    "create_collector",
    "profile",
    "register_hook",
    "start",
    "stop",
    "trace_retained",
]
