"""
Ledger network client port and its in-process implementations.

Features:
- LedgerNetworkClient: the calls the bridge makes against the network
- SimulatedLedgerNetwork: in-memory network for development and tests
- ResilientNetworkClient: retries read-only queries, never mutations
"""
from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .exceptions import (
    AccountCreationFailedError,
    NetworkRequestError,
    PaymentFailedError,
    TrustLineAdjustmentFailedError,
)
from .models import AccountId, KeyPair, SecretSeed, to_network_amount
from .retry import READ_RETRY_CONFIG, RetryConfig, retry_async

logger = logging.getLogger(__name__)

_BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

MUTATING_OPERATIONS = frozenset(("create_account", "set_trust_line_size", "pay"))


class LedgerNetworkClient(ABC):
    """Abstract interface for the external asset-issuing network."""

    @abstractmethod
    async def create_account(self) -> KeyPair:
        """Create and fund a new account.

        Raises:
            AccountCreationFailedError: the account could not be created
        """

    @abstractmethod
    async def set_trust_line_size(
        self,
        payer_key: SecretSeed,
        issuer: AccountId,
        asset_code: str,
        limit: Decimal,
    ) -> None:
        """Set the limit of the trust line from the key's account to `issuer`.

        Raises:
            TrustLineAdjustmentFailedError: the network refused the change
        """

    @abstractmethod
    async def pay(
        self,
        destination: AccountId,
        amount: Decimal,
        asset_code: str,
        source_key: SecretSeed,
    ) -> None:
        """Pay `amount` of `asset_code` from the key's account to `destination`.

        Raises:
            PaymentFailedError: the network rejected the payment
        """

    @abstractmethod
    async def get_balance(self, account: AccountId, asset_code: str) -> Decimal:
        """Balance of `asset_code` held by `account`, across all issuers."""

    @abstractmethod
    async def get_balance_by_issuer(
        self,
        account: AccountId,
        asset_code: str,
        issuer: AccountId,
    ) -> Decimal:
        """Balance of `asset_code` held by `account` that was issued by `issuer`."""

    @abstractmethod
    async def currency_issued(self, issuer: AccountId, asset_code: str) -> Decimal:
        """Amount of `asset_code` issued by `issuer` and currently in circulation."""


def _random_strkey(prefix: str) -> str:
    return prefix + "".join(secrets.choice(_BASE32_ALPHABET) for _ in range(55))


class SimulatedLedgerNetwork(LedgerNetworkClient):
    """
    In-memory network for development and tests.

    Models just enough of an issuing network for the bridge: accounts funded
    from an installation account, capped trust lines, issuer-scoped balances,
    issuance by paying out of an issuer and burning by paying back to it.
    Every call is recorded in `calls` so tests can assert on traffic.
    """

    NATIVE_ASSET = "native"

    def __init__(
        self,
        installation_funds: Decimal = Decimal("100000"),
        starting_balance: Decimal = Decimal("20"),
    ):
        self.starting_balance = to_network_amount(starting_balance)
        self._accounts_by_seed: Dict[str, str] = {}
        self._native: Dict[str, Decimal] = {}
        self._trust_lines: Dict[Tuple[str, str, str], Decimal] = {}
        self._balances: Dict[Tuple[str, str, str], Decimal] = {}
        self._failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, ...]] = []

        self.installation_account_id = _random_strkey("G")
        self._native[self.installation_account_id] = to_network_amount(installation_funds)

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def inject_failure(self, operation: str, error: Exception) -> None:
        """Make the next call to `operation` raise `error`."""
        self._failures[operation] = error

    @property
    def mutating_calls(self) -> List[Tuple[str, ...]]:
        return [call for call in self.calls if call[0] in MUTATING_OPERATIONS]

    def trust_line_limit(self, holder_id: str, issuer_id: str, asset_code: str) -> Optional[Decimal]:
        return self._trust_lines.get((holder_id, issuer_id, asset_code))

    def native_balance(self, account_id: str) -> Decimal:
        return self._native.get(account_id, Decimal("0"))

    def _record(self, operation: str, *args: str) -> None:
        self.calls.append((operation, *args))
        failure = self._failures.pop(operation, None)
        if failure is not None:
            raise failure

    def _account_for_key(self, key: SecretSeed) -> Optional[str]:
        return self._accounts_by_seed.get(key.reveal())

    def _require_account(self, account_id: str, operation: str) -> None:
        if account_id not in self._native:
            raise NetworkRequestError(f"Account {account_id} does not exist", operation=operation)

    # ------------------------------------------------------------------
    # LedgerNetworkClient
    # ------------------------------------------------------------------

    async def create_account(self) -> KeyPair:
        self._record("create_account")

        available = self._native[self.installation_account_id]
        if available < self.starting_balance:
            raise AccountCreationFailedError(
                "Installation account cannot fund a new account",
                details={"available": str(available), "required": str(self.starting_balance)},
            )

        account_id = _random_strkey("G")
        seed = _random_strkey("S")
        self._native[self.installation_account_id] = available - self.starting_balance
        self._native[account_id] = self.starting_balance
        self._accounts_by_seed[seed] = account_id

        logger.info(f"Simulated account created: {account_id}")
        return KeyPair(account_id=account_id, secret_seed=SecretSeed(seed))

    async def set_trust_line_size(
        self,
        payer_key: SecretSeed,
        issuer: AccountId,
        asset_code: str,
        limit: Decimal,
    ) -> None:
        self._record("set_trust_line_size", issuer.account_id, asset_code, str(limit))

        holder_id = self._account_for_key(payer_key)
        if holder_id is None:
            raise TrustLineAdjustmentFailedError.network_failure(
                issuer.account_id, asset_code, "unknown signing key"
            )
        if issuer.account_id not in self._native:
            raise TrustLineAdjustmentFailedError.network_failure(
                issuer.account_id, asset_code, "issuer account does not exist"
            )
        if issuer.account_id == holder_id:
            raise TrustLineAdjustmentFailedError.network_failure(
                issuer.account_id, asset_code, "an account cannot trust itself"
            )

        limit = to_network_amount(limit)
        if limit < 0:
            raise TrustLineAdjustmentFailedError.network_failure(
                issuer.account_id, asset_code, "limit must not be negative"
            )

        key = (holder_id, issuer.account_id, asset_code)
        held = self._balances.get(key, Decimal("0"))
        if limit < held:
            raise TrustLineAdjustmentFailedError.network_failure(
                issuer.account_id, asset_code, f"limit {limit} is below held balance {held}"
            )

        if limit == 0:
            self._trust_lines.pop(key, None)
            self._balances.pop(key, None)
        else:
            self._trust_lines[key] = limit
        logger.debug(f"Simulated trust line {holder_id} -> {issuer.account_id} {asset_code} = {limit}")

    async def pay(
        self,
        destination: AccountId,
        amount: Decimal,
        asset_code: str,
        source_key: SecretSeed,
    ) -> None:
        self._record("pay", destination.account_id, asset_code, str(amount))

        amount = to_network_amount(amount)
        dest_id = destination.account_id
        source_id = self._account_for_key(source_key)

        def reject(reason: str) -> PaymentFailedError:
            return PaymentFailedError(
                f"Payment rejected: {reason}",
                destination=dest_id,
                asset_code=asset_code,
                amount=str(amount),
            )

        if source_id is None:
            raise reject("unknown signing key")
        if dest_id not in self._native:
            raise reject("destination account does not exist")
        if source_id == dest_id:
            raise reject("source and destination are the same account")
        if amount <= 0:
            raise reject("amount must be positive")

        # Paying units back to their issuer takes them out of circulation
        returned = (source_id, dest_id, asset_code)
        held = self._balances.get(returned, Decimal("0"))
        if held > 0:
            if held < amount:
                raise reject(f"holds only {held} issued by the destination")
            self._balances[returned] = held - amount
            return

        # Otherwise pass on units the source holds from a single issuer
        for (holder, issuer_id, code), held in list(self._balances.items()):
            if holder != source_id or code != asset_code or held < amount:
                continue
            self._credit(dest_id, issuer_id, asset_code, amount, reject)
            self._balances[(holder, issuer_id, code)] = held - amount
            return

        # Otherwise the source issues new units of its own asset
        self._credit(dest_id, source_id, asset_code, amount, reject)

    def _credit(self, holder_id, issuer_id, asset_code, amount, reject) -> None:
        key = (holder_id, issuer_id, asset_code)
        limit = self._trust_lines.get(key)
        if limit is None:
            raise reject(f"destination has no trust line to {issuer_id}")
        held = self._balances.get(key, Decimal("0"))
        if held + amount > limit:
            raise reject(f"would exceed trust line limit {limit}")
        self._balances[key] = held + amount

    async def get_balance(self, account: AccountId, asset_code: str) -> Decimal:
        self._record("get_balance", account.account_id, asset_code)
        self._require_account(account.account_id, "get_balance")
        if asset_code == self.NATIVE_ASSET:
            return self._native[account.account_id]
        return sum(
            (held for (holder, _, code), held in self._balances.items()
             if holder == account.account_id and code == asset_code),
            Decimal("0"),
        )

    async def get_balance_by_issuer(
        self,
        account: AccountId,
        asset_code: str,
        issuer: AccountId,
    ) -> Decimal:
        self._record("get_balance_by_issuer", account.account_id, asset_code, issuer.account_id)
        self._require_account(account.account_id, "get_balance_by_issuer")
        return self._balances.get((account.account_id, issuer.account_id, asset_code), Decimal("0"))

    async def currency_issued(self, issuer: AccountId, asset_code: str) -> Decimal:
        self._record("currency_issued", issuer.account_id, asset_code)
        self._require_account(issuer.account_id, "currency_issued")
        return sum(
            (held for (_, issuer_id, code), held in self._balances.items()
             if issuer_id == issuer.account_id and code == asset_code),
            Decimal("0"),
        )


class ResilientNetworkClient(LedgerNetworkClient):
    """
    Wraps a client so that read-only queries are retried with backoff.

    Account creation, trust line changes and payments are forwarded exactly
    once: resubmitting them is not guaranteed to be idempotent.
    """

    def __init__(self, inner: LedgerNetworkClient, retry_config: RetryConfig = READ_RETRY_CONFIG):
        self._inner = inner
        self._retry_config = retry_config

    @property
    def inner(self) -> LedgerNetworkClient:
        return self._inner

    async def create_account(self) -> KeyPair:
        return await self._inner.create_account()

    async def set_trust_line_size(self, payer_key, issuer, asset_code, limit) -> None:
        await self._inner.set_trust_line_size(payer_key, issuer, asset_code, limit)

    async def pay(self, destination, amount, asset_code, source_key) -> None:
        await self._inner.pay(destination, amount, asset_code, source_key)

    async def get_balance(self, account, asset_code) -> Decimal:
        return await retry_async(
            self._inner.get_balance, account, asset_code, config=self._retry_config
        )

    async def get_balance_by_issuer(self, account, asset_code, issuer) -> Decimal:
        return await retry_async(
            self._inner.get_balance_by_issuer, account, asset_code, issuer,
            config=self._retry_config,
        )

    async def currency_issued(self, issuer, asset_code) -> Decimal:
        return await retry_async(
            self._inner.currency_issued, issuer, asset_code, config=self._retry_config
        )
