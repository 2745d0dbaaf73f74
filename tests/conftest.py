"""
Pytest configuration and shared fixtures.

The supervisor tests run real child processes: small Python scripts started
with the current interpreter (see helpers.py), so the suite does not depend
on anything else being installed on the machine.
"""

import socket

import pytest

# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Tests that spawn real processes")
    config.addinivalue_line("markers", "e2e: End-to-end orchestration tests")


# =============================================================================
# Shared Fixtures
# =============================================================================


@pytest.fixture
def free_port() -> int:
    """A TCP port on 127.0.0.1 that nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]

