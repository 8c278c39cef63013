"""Test configuration and fixtures."""

import os
from pathlib import Path

import pytest

from pack_lifecycle.core.types import LifecycleConfig
from pack_lifecycle.models import BuildSession
from tests.helpers import FakeEngine, MemoryImageStore, run_image, write_tree


@pytest.fixture
def engine(tmp_path):
    """Fake engine rooted in a temporary directory."""
    return FakeEngine(tmp_path / "engine")


@pytest.fixture
def app_dir(tmp_path) -> Path:
    """An application directory with a single file."""
    return write_tree(tmp_path / "app", {"index.js": "console.log('hello')\n"})


@pytest.fixture
def store():
    """In-memory store holding the run image."""
    return MemoryImageStore({"run:latest": run_image()})


@pytest.fixture
def config():
    """Default lifecycle settings, independent of the environment."""
    return LifecycleConfig()


@pytest.fixture
def session(app_dir, engine):
    """A local build session for the test app."""
    return BuildSession(
        app_dir=str(app_dir),
        build_image="build:latest",
        run_image="run:latest",
        repo_name="myorg/myapp",
        publish=False,
        engine=engine,
    )


# Pytest configuration
def pytest_configure(config):
    """Configure pytest markers and settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring a Docker daemon"
    )
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")


def pytest_collection_modifyitems(config, items):
    """Modify test collection."""
    # Skip integration tests if no Docker daemon
    skip_integration = pytest.mark.skip(reason="Docker daemon not available")

    for item in items:
        if (
            "integration" in item.keywords
            and os.getenv("DOCKER_AVAILABLE", "false").lower() != "true"
        ):
            item.add_marker(skip_integration)
