import pytest

from threadscope.settings.profiling import ProfilingConfig


def test_defaults(monkeypatch):
    for name in (
        "THREADSCOPE_INTERVAL",
        "THREADSCOPE_ALLOCATION_SAMPLE_RATE",
        "THREADSCOPE_MAX_FRAMES",
        "THREADSCOPE_GC",
        "THREADSCOPE_IGNORE_PROFILER",
        "THREADSCOPE_ENABLE_ASSERTS",
    ):
        monkeypatch.delenv(name, raising=False)
    config = ProfilingConfig()
    assert config.interval == 500
    assert config.allocation_sample_rate is None
    assert config.max_frames == 64
    assert config.gc is True
    assert config.ignore_profiler is True
    assert config.enable_asserts is False
    assert config.memory_usage_interval == 0.01


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("THREADSCOPE_INTERVAL", "1000")
    monkeypatch.setenv("THREADSCOPE_ALLOCATION_SAMPLE_RATE", "16")
    monkeypatch.setenv("THREADSCOPE_MAX_FRAMES", "8")
    monkeypatch.setenv("THREADSCOPE_GC", "false")
    monkeypatch.setenv("THREADSCOPE_ENABLE_ASSERTS", "1")
    config = ProfilingConfig()
    assert config.interval == 1000
    assert config.allocation_sample_rate == 16
    assert config.max_frames == 8
    assert config.gc is False
    assert config.enable_asserts is True


@pytest.mark.parametrize("raw", ["none", "None", "", "0"])
def test_allocation_sample_rate_disabled(monkeypatch, raw):
    monkeypatch.setenv("THREADSCOPE_ALLOCATION_SAMPLE_RATE", raw)
    assert ProfilingConfig().allocation_sample_rate is None


def test_collector_defaults_follow_config(monkeypatch):
    from threadscope.profiling import collector
    from threadscope.settings import profiling

    monkeypatch.setattr(profiling.config, "interval", 2000)
    monkeypatch.setattr(profiling.config, "gc", False)
    c = collector.create_collector("wall")
    assert c.interval == 2000
    assert c.gc is False
