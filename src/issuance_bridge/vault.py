"""
Vault-based issuance reconciliation.

Each tenant may own a vault account that issues units of an asset to the
tenant's main account. Reconciliation drives the vault's live issuance
toward a requested target:

- Growing widens the main -> vault trust line first, then pays the
  difference out of the vault (issuing new units).
- Shrinking pays back what the main account actually holds (at most the
  requested reduction), then narrows the trust line.

After every successful adjustment the trust line limit equals the live
issuance plus TRUST_LINE_HEADROOM. Issuance is always read from the
network, never cached.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from .exceptions import BridgeValidationError, InvariantViolationError
from .locks import LockManager
from .models import (
    MAX_NETWORK_AMOUNT,
    TRUST_LINE_HEADROOM,
    AccountBridge,
    Vault,
    to_network_amount,
    validate_asset_code,
)
from .network import LedgerNetworkClient
from .registry import BridgeRegistry

logger = logging.getLogger(__name__)

ZERO = to_network_amount(0)
# Largest target whose trust line limit (target + headroom) the network can represent
MAX_ISSUANCE_TARGET = MAX_NETWORK_AMOUNT - TRUST_LINE_HEADROOM


class VaultReconciler:
    """Converges a tenant vault's issued amount of an asset to a target."""

    def __init__(
        self,
        registry: BridgeRegistry,
        network: LedgerNetworkClient,
        lock_manager: Optional[LockManager] = None,
        lock_timeout: Optional[float] = None,
    ):
        self._registry = registry
        self._network = network
        self._locks = lock_manager or LockManager()
        self._lock_timeout = lock_timeout

    async def adjust_issued_assets(
        self,
        tenant_id: str,
        asset_code: str,
        target_amount: Decimal,
    ) -> Decimal:
        """
        Make the tenant's vault have issued `target_amount` of `asset_code`.

        Returns the amount actually issued afterwards. This is the target,
        except when shrinking is limited by what the main account still holds.

        Raises:
            BridgeValidationError: negative target or malformed asset code
            UnknownTenantError: no bridge for the tenant
            InvariantViolationError: vault bookkeeping is inconsistent
            NetworkRequestError, TrustLineAdjustmentFailedError: from the network
        """
        try:
            validate_asset_code(asset_code)
            target = to_network_amount(target_amount)
        except ValueError as e:
            raise BridgeValidationError(str(e)) from e
        if target < 0:
            raise BridgeValidationError("Target issuance must not be negative", field="target_amount")
        if target > MAX_ISSUANCE_TARGET:
            raise BridgeValidationError(
                f"Target issuance must not exceed {MAX_ISSUANCE_TARGET}", field="target_amount"
            )

        async with self._locks.lock_async(
            "vault", f"{tenant_id}:{asset_code}", timeout=self._lock_timeout
        ):
            with self._registry.checkout(tenant_id) as bridge:
                if not bridge.has_vault:
                    if target == 0:
                        return ZERO
                    needs_vault = True
                else:
                    needs_vault = False

            if needs_vault:
                await self._ensure_vault(tenant_id)

            with self._registry.checkout(tenant_id) as bridge:
                return await self._converge(bridge, asset_code, target)

    async def _ensure_vault(self, tenant_id: str) -> None:
        # Adjustments for different assets of one tenant share the vault
        async with self._locks.lock_async(
            "vault_creation", tenant_id, timeout=self._lock_timeout
        ):
            with self._registry.checkout(tenant_id) as bridge:
                if not bridge.has_vault:
                    await self._create_vault(bridge)

    async def _create_vault(self, bridge: AccountBridge) -> None:
        # add_vault raises InvariantViolationError if a vault was recorded meanwhile
        key_pair = await self._network.create_account()
        with key_pair.secret_seed:
            try:
                self._registry.add_vault(bridge.tenant_id, key_pair)
            except Exception:
                logger.error(
                    f"Vault account {key_pair.account_id} was created on the network "
                    f"but could not be recorded for tenant {bridge.tenant_id}"
                )
                raise
        logger.info(f"Vault account {key_pair.account_id} created for tenant {bridge.tenant_id}")

    async def _converge(self, bridge: AccountBridge, asset_code: str, target: Decimal) -> Decimal:
        vault = bridge.vault
        if not isinstance(vault, Vault):
            raise InvariantViolationError(
                f"Tenant '{bridge.tenant_id}' has no vault after vault creation"
            )
        vault_account = bridge.vault_account
        main_account = bridge.main_account

        current_issued = await self._network.currency_issued(vault_account, asset_code)
        delta = target - current_issued

        if delta < 0:
            held_by_main = await self._network.get_balance_by_issuer(
                main_account, asset_code, vault_account
            )
            reducible = min(held_by_main, -delta)
            new_issued = current_issued - reducible

            if reducible > 0:
                await self._network.pay(
                    vault_account, reducible, asset_code, bridge.main_secret_seed
                )
            await self._network.set_trust_line_size(
                bridge.main_secret_seed, vault_account, asset_code,
                new_issued + TRUST_LINE_HEADROOM,
            )

            logger.info(
                f"Vault issuance of {asset_code} for tenant {bridge.tenant_id} reduced "
                f"from {current_issued} to {new_issued} (requested {target})"
            )
            return new_issued

        if delta > 0:
            # Trust must widen first or the incoming payment exceeds the limit
            await self._network.set_trust_line_size(
                bridge.main_secret_seed, vault_account, asset_code,
                target + TRUST_LINE_HEADROOM,
            )
            await self._network.pay(main_account, delta, asset_code, vault.secret_seed)

            logger.info(
                f"Vault issuance of {asset_code} for tenant {bridge.tenant_id} raised "
                f"from {current_issued} to {target}"
            )
            return target

        logger.debug(f"Vault issuance of {asset_code} for tenant {bridge.tenant_id} already at {target}")
        return current_issued

    def tenant_has_vault(self, tenant_id: str) -> bool:
        with self._registry.checkout(tenant_id) as bridge:
            return bridge.has_vault

    async def get_vault_issued_assets(self, tenant_id: str, asset_code: str) -> Decimal:
        vault_account = self._registry.get_vault_account_id(tenant_id)
        if vault_account is None:
            return ZERO
        return await self._network.currency_issued(vault_account, asset_code)
