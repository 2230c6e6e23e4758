import os

from hypothesis import HealthCheck
from hypothesis import settings
import pytest


settings.register_profile(
    "ci", deadline=None, suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture]
)
settings.register_profile("default", deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


@pytest.fixture(autouse=True)
def no_active_trace():
    """Make sure no test leaves a trace registered behind it."""
    from threadscope.profiling import profiler

    yield
    leftover = list(profiler.registry._active)
    for key in leftover:
        handle = profiler.registry.get(key)
        if handle is not None:
            profiler.stop(handle)
    assert not leftover, "traces left active: %r" % leftover
