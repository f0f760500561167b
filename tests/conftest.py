"""
Pytest configuration for issuance-bridge tests.
"""
from __future__ import annotations

import logging
import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("BRIDGE_ENVIRONMENT", "dev")
os.environ.setdefault("BRIDGE_REGISTRY_DSN", "memory://")
os.environ.setdefault("BRIDGE_OUTBOX_DSN", "memory://")

from issuance_bridge.address import StaticAddressResolver
from issuance_bridge.network import SimulatedLedgerNetwork
from issuance_bridge.registry import BridgeRegistry


@pytest.fixture
def network():
    """Fresh simulated network."""
    return SimulatedLedgerNetwork(installation_funds=Decimal("1000"), starting_balance=Decimal("20"))


@pytest.fixture
def registry():
    """In-memory bridge registry."""
    return BridgeRegistry("memory://")


@pytest.fixture
def resolver():
    """Empty static resolver; tests register the addresses they need."""
    return StaticAddressResolver()


@pytest_asyncio.fixture
async def bridged_tenant(network, registry):
    """A tenant with a main account and no vault. Returns (tenant_id, main account id)."""
    key_pair = await network.create_account()
    with key_pair.secret_seed:
        registry.save("tenant-a", "ledger-token", key_pair)
    return "tenant-a", key_pair.account_id



@pytest.fixture
def restore_root_logger():
    """Undo handler and level changes made to the root logger by a test."""
    root = logging.getLogger()
    httpx_logger = logging.getLogger("httpx")
    saved_handlers, saved_level, saved_httpx_level = root.handlers[:], root.level, httpx_logger.level
    yield
    for handler in root.handlers[:]:
        if handler not in saved_handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in saved_handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(saved_level)
    httpx_logger.setLevel(saved_httpx_level)
