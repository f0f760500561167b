"""Bridge data models: accounts, keys, bridges and payment events."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# The network stores amounts as signed 64-bit integers of 10^-7 units
NETWORK_AMOUNT_SCALE = 7
NETWORK_AMOUNT_QUANTIZE = Decimal(10) ** -NETWORK_AMOUNT_SCALE
MAX_NETWORK_AMOUNT = Decimal("922337203685.4775807")

# Fixed headroom kept between a vault trust line limit and the vault's issuance
TRUST_LINE_HEADROOM = Decimal("1")

ASSET_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{1,12}$")


def to_network_amount(value: Any) -> Decimal:
    """
    Convert a numeric value to a Decimal with the network's precision.

    Args:
        value: Number, string, or Decimal to convert

    Returns:
        Decimal quantized to 7 fractional digits (extra digits are truncated)

    Raises:
        ValueError: If value cannot be converted or is out of range
    """
    try:
        if isinstance(value, Decimal):
            d = value
        elif isinstance(value, float):
            d = Decimal(str(value))
        elif isinstance(value, (int, str)):
            d = Decimal(value)
        else:
            raise ValueError(f"Cannot convert {type(value).__name__} to Decimal")
        if not d.is_finite():
            raise ValueError(f"Amount must be finite: {value}")
        d = d.quantize(NETWORK_AMOUNT_QUANTIZE, rounding=ROUND_DOWN)
    except InvalidOperation as e:
        raise ValueError(f"Invalid decimal value: {value}") from e

    if abs(d) > MAX_NETWORK_AMOUNT:
        raise ValueError(f"Amount exceeds network maximum: {value}")
    return d


def validate_asset_code(asset_code: str) -> str:
    if not isinstance(asset_code, str) or not ASSET_CODE_PATTERN.match(asset_code):
        raise ValueError(f"Asset code must be 1-12 alphanumeric characters: {asset_code!r}")
    return asset_code


@dataclass(frozen=True, slots=True)
class AccountId:
    """Network account identifier, optionally narrowed to a sub-account."""
    account_id: str
    sub_account: Optional[str] = None

    @classmethod
    def main_account(cls, account_id: str) -> "AccountId":
        return cls(account_id=account_id)

    @classmethod
    def with_sub_account(cls, account_id: str, sub_account: str) -> "AccountId":
        return cls(account_id=account_id, sub_account=sub_account)

    @property
    def is_top_level(self) -> bool:
        return self.sub_account is None

    def __str__(self) -> str:
        if self.sub_account is None:
            return self.account_id
        return f"{self.account_id}:{self.sub_account}"


class SecretSeed:
    """
    Private key material held in a wipeable buffer.

    The seed lives in a bytearray so it can be zeroed once the borrowing
    call is done. `reveal()` hands out a str copy for the network client;
    callers must not keep it beyond the call.
    """

    __slots__ = ("_buffer", "_wiped")

    def __init__(self, seed: Union[str, bytes, bytearray]):
        if isinstance(seed, str):
            seed = seed.encode("ascii")
        self._buffer = bytearray(seed)
        self._wiped = False

    def reveal(self) -> str:
        if self._wiped:
            raise ValueError("Secret seed has been wiped")
        return self._buffer.decode("ascii")

    def wipe(self) -> None:
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._wiped = True

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def __enter__(self) -> "SecretSeed":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretSeed):
            return NotImplemented
        return not self._wiped and not other._wiped and self._buffer == other._buffer

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return "SecretSeed(<wiped>)" if self._wiped else "SecretSeed(<redacted>)"


@dataclass
class KeyPair:
    """A network account together with the seed that signs for it."""
    account_id: str
    secret_seed: SecretSeed


@dataclass(frozen=True)
class NoVault:
    """The tenant has not issued anything yet, so no vault account exists."""


@dataclass
class Vault:
    """The tenant's vault account and its signing seed."""
    account_id: str
    secret_seed: SecretSeed


VaultState = Union[NoVault, Vault]


@dataclass
class AccountBridge:
    """
    Association between a ledger tenant and its network accounts.

    The vault is either absent or complete; there is no state in which an
    id exists without its key.
    """
    tenant_id: str
    main_account_id: str
    main_secret_seed: SecretSeed
    ledger_token: str = ""
    vault: VaultState = field(default_factory=NoVault)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_vault(self) -> bool:
        return isinstance(self.vault, Vault)

    @property
    def main_account(self) -> AccountId:
        return AccountId.main_account(self.main_account_id)

    @property
    def vault_account(self) -> Optional[AccountId]:
        if isinstance(self.vault, Vault):
            return AccountId.main_account(self.vault.account_id)
        return None

    def wipe_secrets(self) -> None:
        """Zero every seed carried by this record."""
        self.main_secret_seed.wipe()
        if isinstance(self.vault, Vault):
            self.vault.secret_seed.wipe()


class Payment(BaseModel):
    """An outbound payment from a tenant's main account."""

    model_config = ConfigDict(frozen=True)

    source_tenant_id: str = Field(min_length=1)
    destination_address: str = Field(min_length=1)
    asset_code: str
    amount: Decimal
    reference: Optional[str] = None

    @field_validator("asset_code")
    @classmethod
    def check_asset_code(cls, v: str) -> str:
        return validate_asset_code(v)

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, v: Any) -> Decimal:
        amount = to_network_amount(v)
        if amount <= 0:
            raise ValueError("Payment amount must be positive")
        return amount


@dataclass
class PaymentEvent:
    """Durable outbox record for a payment awaiting dispatch."""
    payload: str
    processed: bool = False
    created_on: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_modified_on: Optional[datetime] = None
    event_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.last_modified_on is None:
            self.last_modified_on = self.created_on

    def payment(self) -> Payment:
        return Payment.model_validate_json(self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "payload": self.payload,
            "processed": self.processed,
            "created_on": self.created_on.isoformat(),
            "last_modified_on": self.last_modified_on.isoformat() if self.last_modified_on else None,
        }
