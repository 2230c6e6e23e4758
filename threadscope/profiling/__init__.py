from threadscope.profiling.profiler import DEFAULT_KEY  # noqa:F401
from threadscope.profiling.profiler import Profile  # noqa:F401
from threadscope.profiling.profiler import TraceHandle  # noqa:F401
from threadscope.profiling.profiler import profile  # noqa:F401
from threadscope.profiling.profiler import start  # noqa:F401
from threadscope.profiling.profiler import stop  # noqa:F401
from threadscope.profiling.profiler import trace_retained  # noqa:F401
