"""
Pytest configuration and fixtures for the test suite.
"""
import os

# Use litellm's bundled model cost map instead of fetching it over the network
# at import time (the fetch hangs/deadlocks under pytest when offline).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import pytest
from hypothesis import HealthCheck, Verbosity, settings

from tests.fakes import FakeLLM, RecordingSleep, small_config

# Property tests run at least 100 examples unless a profile says otherwise
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=200, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=50, verbosity=Verbosity.normal)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    suppress_health_check=[HealthCheck.too_slow],
)

settings.load_profile("default")


@pytest.fixture
def config():
    return small_config()


@pytest.fixture
def fake_llm(config):
    return FakeLLM(config)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
