"""Pytest configuration and shared fixtures for fork pool tests."""

import sys
import time
import uuid
from pathlib import Path

import pytest
from loguru import logger

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from forkpool import ExecutionMode, Pool  # noqa: E402

# Configure logging
logger.remove()
logger.add(sys.stderr, level="INFO")

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


# Module-level task functions
def return_two():
    """Return a constant."""
    return 2


def slow_task(duration):
    """Sleep for specified duration."""
    time.sleep(duration)
    return f"Slept for {duration}s"


def error_task():
    """Task that raises an error."""
    return 1 / 0


def fibonacci(n):
    """Calculate fibonacci number."""
    if n <= 1:
        return n
    return fibonacci(n - 1) + fibonacci(n - 2)


@pytest.fixture
def pool():
    """Create a forking pool for testing."""
    # Use unique name for each test to tell pools apart in logs
    pool = Pool.create(name=f"test_pool_{uuid.uuid4().hex[:8]}", sleep_time=0.005)
    yield pool
    pool.stop()


@pytest.fixture
def sync_pool():
    """Create a pool forced into inline execution."""
    pool = Pool.create(name=f"test_sync_pool_{uuid.uuid4().hex[:8]}", execution_mode=ExecutionMode.FORCE_SYNC, sleep_time=0.005)
    yield pool
    pool.stop()


@pytest.fixture
def sample_tasks():
    """Provide sample zero-argument tasks for testing."""
    return {
        "constant": return_two,
        "slow": lambda: slow_task(0.1),
        "error": error_task,
        "cpu_intensive": lambda: fibonacci(20),
        "memory_intensive": lambda: [0] * 1_000_000,
    }


# Markers for test categorization
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "process_pool: marks tests that fork real processes")
    config.addinivalue_line("markers", "sync_pool: marks tests for the inline fallback")
