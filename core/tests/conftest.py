"""Shared fixtures: an engine configuration that ignores ~/.branchflow."""

import pytest

from branchflow.config import EngineConfig


def make_config(**overrides) -> EngineConfig:
    values = dict(
        node_timeout_ms=5000,
        max_branches=10,
        max_steps=1000,
        event_replay_size=100,
        max_event_history=1000,
        storage_path=None,
        log_level="INFO",
        log_format="human",
    )
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture
def engine_config() -> EngineConfig:
    return make_config()
