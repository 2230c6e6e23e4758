import typing as t

from envier import Env

from threadscope.internal.logger import get_logger


logger = get_logger(__name__)


def _parse_optional_rate(raw):
    # type: (str) -> t.Optional[int]
    if raw.strip().lower() in ("", "none", "0"):
        return None
    return int(raw)


class ProfilingConfig(Env):
    __prefix__ = "threadscope"

    interval = Env.v(
        int,
        "interval",
        default=500,
        help_type="Integer",
        help="The interval in microseconds between two wall-mode sampling ticks",
    )

    allocation_sample_rate = Env.v(
        t.Optional[int],
        "allocation_sample_rate",
        parser=_parse_optional_rate,
        default=None,
        help_type="Integer",
        help="Record one allocation notification out of this many in wall mode. Unset disables allocation sampling",
    )

    max_frames = Env.v(
        int,
        "max_frames",
        default=64,
        help_type="Integer",
        help="The maximum number of frames tracemalloc keeps for each traced memory block in retained mode",
    )

    gc = Env.v(
        bool,
        "gc",
        default=True,
        help_type="Boolean",
        help="Whether to force garbage collections before a retained-mode trace starts and when it drains",
    )

    ignore_profiler = Env.v(
        bool,
        "ignore_profiler",
        default=True,
        help_type="Boolean",
        help="Whether to exclude the profiler's own threads from the samples",
    )

    enable_asserts = Env.v(
        bool,
        "enable_asserts",
        default=False,
        help_type="Boolean",
        help="Whether to verify every interning table invariant when a result is assembled",
    )

    memory_usage_interval = Env.v(
        float,
        "memory_usage_interval",
        default=0.01,
        help_type="Float",
        help="The interval in seconds between two readings of the memory_usage hook",
    )


config = ProfilingConfig()

if config.interval <= 0:
    logger.warning("Invalid sampling interval %d, using the default of 500 microseconds", config.interval)
    config.interval = 500
