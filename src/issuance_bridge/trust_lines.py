"""Trust line management for tenant accounts."""
from __future__ import annotations

import logging
from decimal import Decimal

from .address import AddressResolver
from .exceptions import (
    BridgeValidationError,
    NetworkRequestError,
    TrustLineAdjustmentFailedError,
)
from .models import AccountId, to_network_amount, validate_asset_code
from .network import LedgerNetworkClient
from .registry import BridgeRegistry

logger = logging.getLogger(__name__)


class TrustLineManager:
    """
    Changes how much of an asset a tenant's main account accepts from an issuer.

    Trust may only point at top-level accounts. A sub-account is a routing
    marker on a shared account, not an issuer, so trust toward one is refused
    before anything reaches the network.
    """

    def __init__(
        self,
        resolver: AddressResolver,
        registry: BridgeRegistry,
        network: LedgerNetworkClient,
    ):
        self._resolver = resolver
        self._registry = registry
        self._network = network

    async def get_top_level_account_id(self, address: str) -> AccountId:
        """
        Resolve `address`, refusing sub-accounts.

        Raises:
            InvalidAddressError, ResolutionFailedError: from the resolver
            TrustLineAdjustmentFailedError: the address is a sub-account
        """
        account = await self._resolver.resolve(address)
        if not account.is_top_level:
            raise TrustLineAdjustmentFailedError.need_top_level_account(address)
        return account

    async def set_trust_line(
        self,
        tenant_id: str,
        address: str,
        asset_code: str,
        max_amount: Decimal,
    ) -> None:
        """Set the tenant's trust line toward `address` to `max_amount` of `asset_code`."""
        try:
            validate_asset_code(asset_code)
            max_amount = to_network_amount(max_amount)
        except ValueError as e:
            raise BridgeValidationError(str(e)) from e
        if max_amount < 0:
            raise BridgeValidationError("Trust line limit must not be negative", field="max_amount")

        issuer = await self.get_top_level_account_id(address)

        with self._registry.main_key(tenant_id) as main_key:
            try:
                await self._network.set_trust_line_size(main_key, issuer, asset_code, max_amount)
            except NetworkRequestError as e:
                raise TrustLineAdjustmentFailedError.network_failure(
                    issuer.account_id, asset_code, e.message
                ) from e

        logger.info(
            f"Trust line for tenant {tenant_id} toward {issuer.account_id} "
            f"set to {max_amount} {asset_code}"
        )
