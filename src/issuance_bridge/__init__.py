"""
Issuance Bridge - connects a tenant ledger to an asset-issuing network.

This package provides:
- Vault-based issuance reconciliation toward a target amount
- Trust line management restricted to top-level issuer accounts
- A durable payment outbox with replaying dispatch
- Address resolution for federation-style `name*domain` addresses

Example usage:

    from decimal import Decimal
    from issuance_bridge import build_bridge_service, load_settings

    service = build_bridge_service(load_settings())
    await service.create_bridge_config("tenant-a", ledger_token="...")

    # Issue 150 EUR from the tenant's vault to its main account
    issued = await service.adjust_vault_issued_assets("tenant-a", "EUR", Decimal("150"))
"""
from .address import (
    AddressResolver,
    BridgeAddress,
    FederationResolver,
    StaticAddressResolver,
)
from .config import BridgeSettings, load_settings
from .exceptions import (
    AccountCreationFailedError,
    BridgeException,
    BridgeValidationError,
    InvalidAddressError,
    InvalidConfigurationError,
    InvariantViolationError,
    LockTimeoutError,
    NetworkRequestError,
    PaymentFailedError,
    ResolutionFailedError,
    TenantAlreadyBridgedError,
    TrustLineAdjustmentFailedError,
    TrustLineFailureReason,
    UnknownTenantError,
)
from .locks import LockManager
from .models import (
    TRUST_LINE_HEADROOM,
    AccountBridge,
    AccountId,
    KeyPair,
    NoVault,
    Payment,
    PaymentEvent,
    SecretSeed,
    Vault,
    to_network_amount,
)
from .network import LedgerNetworkClient, ResilientNetworkClient, SimulatedLedgerNetwork
from .outbox import (
    EventChannel,
    OutboxStore,
    PaymentDispatcher,
    PaymentEventRecorded,
    PaymentOutbox,
)
from .registry import BridgeRegistry
from .service import BridgeService, build_bridge_service
from .trust_lines import TrustLineManager
from .vault import VaultReconciler

__version__ = "0.1.0"

__all__ = [
    # Service
    "BridgeService",
    "build_bridge_service",
    "BridgeSettings",
    "load_settings",
    # Core
    "VaultReconciler",
    "TrustLineManager",
    "PaymentOutbox",
    "PaymentDispatcher",
    "OutboxStore",
    "EventChannel",
    "PaymentEventRecorded",
    "LockManager",
    # Collaborators
    "BridgeRegistry",
    "LedgerNetworkClient",
    "SimulatedLedgerNetwork",
    "ResilientNetworkClient",
    "AddressResolver",
    "BridgeAddress",
    "FederationResolver",
    "StaticAddressResolver",
    # Models
    "AccountBridge",
    "AccountId",
    "KeyPair",
    "NoVault",
    "Vault",
    "Payment",
    "PaymentEvent",
    "SecretSeed",
    "TRUST_LINE_HEADROOM",
    "to_network_amount",
    # Errors
    "BridgeException",
    "BridgeValidationError",
    "InvalidConfigurationError",
    "InvalidAddressError",
    "ResolutionFailedError",
    "TrustLineAdjustmentFailedError",
    "TrustLineFailureReason",
    "AccountCreationFailedError",
    "NetworkRequestError",
    "PaymentFailedError",
    "UnknownTenantError",
    "TenantAlreadyBridgedError",
    "LockTimeoutError",
    "InvariantViolationError",
]
