"""
Pytest configuration for rpcbench tests

Sets up Python path to allow imports from python/ directory
"""
import sys
from pathlib import Path

import pytest

# Add python directory to path for imports
python_dir = Path(__file__).parent.parent / 'python'
sys.path.insert(0, str(python_dir))


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


@pytest.fixture(autouse=True)
def reset_config():
    """Reset global config before each test"""
    from rpcbench import config_loader

    # Reset global config to avoid cross-test contamination
    config_loader._global_config = None

    yield

    # Clean up after test
    config_loader._global_config = None


@pytest.fixture
def test_config():
    """Built-in defaults with short timeouts for tests"""
    from rpcbench.config_loader import Config

    return Config({
        "client": {"connect_timeout_ms": 2000},
        "stream_call": {"queue_put_backoff_ms": 1},
        "bench": {"stall_warning_ms": 1000},
    })


@pytest.fixture
def make_line():
    """Build one serialized request line"""
    from rpcbench.protocol import make_request, serialize

    def _make(request_id=None, method="echo", params=None):
        return serialize(make_request(method, params, request_id))

    return _make
