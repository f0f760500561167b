"""Exception hierarchy for the issuance bridge.

All recoverable bridge errors inherit from BridgeException, enabling:
- Consistent error handling between the service layer and its callers
- HTTP status code mapping for whatever request layer sits on top
- Structured error responses with error codes

Usage:
    from issuance_bridge.exceptions import (
        BridgeException,
        TrustLineAdjustmentFailedError,
        UnknownTenantError,
    )

    try:
        await service.adjust_trust_line(tenant_id, address, "EUR", Decimal("100"))
    except TrustLineAdjustmentFailedError as e:
        if e.reason is TrustLineFailureReason.TOP_LEVEL_REQUIRED:
            ...

InvariantViolationError is intentionally outside the hierarchy: it signals
a broken internal invariant (such as creating a second vault for a tenant)
and must never be handled as a retryable user error.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Type


class BridgeException(Exception):
    """Base exception for all recoverable bridge errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "UNKNOWN_TENANT")
        details: Optional additional context
    """

    error_code: str = "BRIDGE_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation & Configuration Errors
# =============================================================================

class BridgeValidationError(BridgeException):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class InvalidConfigurationError(BridgeException):
    """Bridge configuration is missing or unusable."""

    error_code = "INVALID_CONFIGURATION"
    http_status = 500

    def __init__(
        self,
        message: str,
        setting: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if setting:
            details["setting"] = setting
        super().__init__(message, details=details)


class UnknownTenantError(BridgeException):
    """No bridge is configured for the tenant."""

    error_code = "UNKNOWN_TENANT"
    http_status = 404

    def __init__(self, tenant_id: str, details: Optional[dict[str, Any]] = None) -> None:
        details = details or {}
        details["tenant_id"] = tenant_id
        super().__init__(f"No bridge configured for tenant '{tenant_id}'", details=details)
        self.tenant_id = tenant_id


class TenantAlreadyBridgedError(BridgeException):
    """A bridge already exists for the tenant."""

    error_code = "CONFLICT"
    http_status = 409

    def __init__(self, tenant_id: str) -> None:
        super().__init__(
            f"A bridge is already configured for tenant '{tenant_id}'",
            details={"tenant_id": tenant_id},
        )
        self.tenant_id = tenant_id


# =============================================================================
# Address Errors
# =============================================================================

class InvalidAddressError(BridgeException):
    """Address string cannot be parsed."""

    error_code = "INVALID_ADDRESS"
    http_status = 400

    def __init__(self, address: str, reason: str = "expected name*domain") -> None:
        super().__init__(
            f"Invalid address '{address}': {reason}",
            details={"address": address, "reason": reason},
        )
        self.address = address


class ResolutionFailedError(BridgeException):
    """Address lookup against its federation server failed."""

    error_code = "RESOLUTION_FAILED"
    http_status = 502

    def __init__(
        self,
        address: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["address"] = address
        details["reason"] = reason
        super().__init__(f"Could not resolve '{address}': {reason}", details=details)
        self.address = address


# =============================================================================
# Network Errors
# =============================================================================

class NetworkRequestError(BridgeException):
    """A request against the external ledger network failed."""

    error_code = "NETWORK_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)


class PaymentFailedError(NetworkRequestError):
    """The network rejected a payment."""

    error_code = "PAYMENT_FAILED"

    def __init__(
        self,
        message: str,
        destination: Optional[str] = None,
        asset_code: Optional[str] = None,
        amount: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if destination:
            details["destination"] = destination
        if asset_code:
            details["asset_code"] = asset_code
        if amount:
            details["amount"] = amount
        super().__init__(message, operation="pay", details=details)


class AccountCreationFailedError(NetworkRequestError):
    """The network could not create (or fund) a new account."""

    error_code = "ACCOUNT_CREATION_FAILED"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, operation="create_account", details=details)


class TrustLineFailureReason(str, Enum):
    """Why a trust-line adjustment was refused."""
    TOP_LEVEL_REQUIRED = "top_level_required"
    NETWORK = "network"


class TrustLineAdjustmentFailedError(BridgeException):
    """A trust line could not be changed.

    The reason keeps policy refusals (no network call was made) apart from
    failures reported by the network itself.
    """

    error_code = "TRUST_LINE_ADJUSTMENT_FAILED"
    http_status = 400

    def __init__(
        self,
        message: str,
        reason: TrustLineFailureReason,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["reason"] = reason.value
        super().__init__(message, details=details)
        self.reason = reason
        if reason is TrustLineFailureReason.NETWORK:
            self.http_status = 502

    @classmethod
    def need_top_level_account(cls, address: str) -> "TrustLineAdjustmentFailedError":
        return cls(
            f"Trust lines may only target top-level accounts, '{address}' is a sub-account",
            reason=TrustLineFailureReason.TOP_LEVEL_REQUIRED,
            details={"address": address},
        )

    @classmethod
    def network_failure(
        cls,
        issuer_account_id: str,
        asset_code: str,
        cause: str,
    ) -> "TrustLineAdjustmentFailedError":
        return cls(
            f"Network refused trust line to {issuer_account_id} for {asset_code}: {cause}",
            reason=TrustLineFailureReason.NETWORK,
            details={"issuer": issuer_account_id, "asset_code": asset_code, "cause": cause},
        )


# =============================================================================
# Concurrency & Invariant Errors
# =============================================================================

class LockTimeoutError(BridgeException):
    """Lock acquisition timed out."""

    error_code = "LOCK_TIMEOUT"
    http_status = 409

    def __init__(self, resource_type: str, resource_id: str, timeout: float) -> None:
        super().__init__(
            f"Lock acquisition timed out after {timeout}s for {resource_type}:{resource_id}",
            details={"resource_type": resource_type, "resource_id": resource_id, "timeout": timeout},
        )


class InvariantViolationError(RuntimeError):
    """An internal invariant was broken. Not a user error, never retried."""


# =============================================================================
# Exception Registry
# =============================================================================

EXCEPTION_REGISTRY: dict[str, Type[BridgeException]] = {
    "BRIDGE_ERROR": BridgeException,
    "VALIDATION_ERROR": BridgeValidationError,
    "INVALID_CONFIGURATION": InvalidConfigurationError,
    "UNKNOWN_TENANT": UnknownTenantError,
    "CONFLICT": TenantAlreadyBridgedError,
    "INVALID_ADDRESS": InvalidAddressError,
    "RESOLUTION_FAILED": ResolutionFailedError,
    "NETWORK_ERROR": NetworkRequestError,
    "PAYMENT_FAILED": PaymentFailedError,
    "ACCOUNT_CREATION_FAILED": AccountCreationFailedError,
    "TRUST_LINE_ADJUSTMENT_FAILED": TrustLineAdjustmentFailedError,
    "LOCK_TIMEOUT": LockTimeoutError,
}


def get_exception_class(error_code: str) -> Type[BridgeException]:
    """Get the exception class for an error code (BridgeException if unknown)."""
    return EXCEPTION_REGISTRY.get(error_code, BridgeException)
