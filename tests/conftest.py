"""Pytest configuration and shared fixtures."""

import pytest

from policyguard.common.config import ENVIRONMENT_VARIABLES, Settings
from policyguard.engine.walker import TargetWalker
from policyguard.matchers.registry import create_registry


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the host's environment variables out of environment detection."""
    for name in ENVIRONMENT_VARIABLES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("POLICYGUARD_ENVIRONMENT", raising=False)


@pytest.fixture
def settings():
    """Settings with small timeouts and no retry delays."""
    return Settings(
        max_workers=2,
        artifact_concurrency=2,
        rule_timeout=30.0,
        cancel_grace_period=1.0,
        api_timeout=5.0,
        api_max_retries=2,
        api_backoff_base=0.0,
        webhook_max_retries=2,
        webhook_backoff_base=0.0,
        observe_interval=0.01,
    )


@pytest.fixture
def registry(settings):
    """Matcher registry built from the test settings."""
    return create_registry(settings)


@pytest.fixture
def target(tmp_path):
    """Empty target directory."""
    root = tmp_path / "target"
    root.mkdir()
    return root


@pytest.fixture
def walker(target):
    """Walker over the target directory."""
    return TargetWalker(str(target), exclude=[r"(^|/)\.git/"])
