"""
Pytest configuration and fixtures for Aegis tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import tempfile
import shutil
from pathlib import Path
from typing import Callable, Generator, Tuple
import pytest

from aegischat.config import Config
from aegischat.identity import Identity, generate
from aegischat.ratchet import Session


def run_handshake(initiator: Session, responder: Session) -> None:
    """Deliver handshake messages between two sessions until both are done."""
    to_responder = [initiator.hello()]
    to_initiator = []
    while to_responder or to_initiator:
        if to_responder:
            to_initiator.extend(responder.receive(to_responder.pop(0)).outbound)
        if to_initiator:
            to_responder.extend(initiator.receive(to_initiator.pop(0)).outbound)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="aegis_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def config() -> Config:
    """Defaults-only configuration, unaffected by the environment."""
    return Config.defaults()


@pytest.fixture
def alice() -> Identity:
    return generate()


@pytest.fixture
def bob() -> Identity:
    return generate()


@pytest.fixture
def handshake() -> Callable[[Session, Session], None]:
    return run_handshake


@pytest.fixture
def session_pair(alice: Identity, bob: Identity, config: Config) -> Tuple[Session, Session]:
    """
    Two established sessions: Alice's view of Bob and Bob's view of Alice.

    Returns:
        tuple: (alice_session, bob_session)
    """
    alice_session = Session(alice, "bob", config)
    bob_session = Session(bob, "alice", config)
    run_handshake(alice_session, bob_session)
    return alice_session, bob_session


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in item.path.parts:
            item.add_marker(pytest.mark.unit)
        else:
            # Session, room and transfer tests run full handshakes
            item.add_marker(pytest.mark.integration)
