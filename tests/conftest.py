"""
Pytest configuration for InheritVault tests.

Puts the project root on the path so ``inheritvault`` imports without an
install, and provides the scripts and payloads shared across test modules.
"""

import sys
import os

import pytest

# Add the project root directory to Python path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from inheritvault.lib.address import (  # noqa: E402
    Network, SECP256K1_BLAKE160_CODE_HASH, encode_full_address,
)
from inheritvault.lib.vault import Script, UnlockCondition, VaultPayload  # noqa: E402
from inheritvault.server.metrics import MetricsCollector  # noqa: E402


def pytest_configure(config):
    """Called after command line options have been parsed."""
    try:
        import inheritvault.lib  # noqa: F401
    except ImportError as e:
        print(f"inheritvault.lib not available: {e}")
        print(f"Project root in path: {project_root}")


def make_lock(args_byte: int) -> Script:
    """A secp256k1-blake160 lock with 20 bytes of repeated ``args_byte``."""
    return Script(SECP256K1_BLAKE160_CODE_HASH, 'type', '0x' + bytes([args_byte]).hex() * 20)


@pytest.fixture
def beneficiary_lock():
    return make_lock(0x11)


@pytest.fixture
def other_lock():
    return make_lock(0x33)


@pytest.fixture
def beneficiary_address(beneficiary_lock):
    return encode_full_address(beneficiary_lock, Network.TESTNET)


@pytest.fixture
def owner_address():
    return encode_full_address(make_lock(0x22), Network.TESTNET)


@pytest.fixture
def payload(owner_address):
    return VaultPayload(owner_address=owner_address,
                        unlock=UnlockCondition.block_height(20_000_000),
                        owner_name='Alice', memo='for the kids')


@pytest.fixture
def metrics():
    """A private collector so tests do not share counters."""
    return MetricsCollector()
