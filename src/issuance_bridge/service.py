"""
Bridge service: the public operation surface of the issuance bridge.

Wires the registry, address resolver, network client, trust line manager,
vault reconciler and payment outbox together. Request handling layers call
this service; it holds no state of its own beyond its collaborators.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from .address import AddressResolver, BridgeAddress, FederationResolver, is_account_id
from .config import BridgeSettings, load_settings
from .exceptions import InvalidConfigurationError, TenantAlreadyBridgedError, UnknownTenantError
from .locks import LockManager
from .logging_config import LogContext, configure_logging, generate_correlation_id
from .models import AccountId, Payment
from .network import LedgerNetworkClient, ResilientNetworkClient, SimulatedLedgerNetwork
from .outbox import EventChannel, OutboxStore, PaymentDispatcher, PaymentOutbox
from .registry import BridgeRegistry
from .retry import RetryConfig
from .trust_lines import TrustLineManager
from .vault import VaultReconciler

logger = logging.getLogger(__name__)


class BridgeService:
    """Operations offered to the ledger side of the bridge."""

    def __init__(
        self,
        registry: BridgeRegistry,
        resolver: AddressResolver,
        network: LedgerNetworkClient,
        outbox_store: OutboxStore,
        installation_account_id: Optional[str] = None,
        lock_manager: Optional[LockManager] = None,
        vault_lock_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.resolver = resolver
        self.network = network
        self.installation_account_id = installation_account_id

        self.channel = EventChannel()
        self.outbox_store = outbox_store
        self.outbox = PaymentOutbox(outbox_store, self.channel)
        self.dispatcher = PaymentDispatcher(outbox_store, self.channel, resolver, registry, network)
        self._locks = lock_manager or LockManager()
        self._lock_timeout = vault_lock_timeout
        self.trust_lines = TrustLineManager(resolver, registry, network)
        self.vaults = VaultReconciler(
            registry, network, lock_manager=self._locks, lock_timeout=vault_lock_timeout
        )
        self._dispatch_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the payment dispatcher (replays unprocessed events first)."""
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self.dispatcher.run())

    async def stop(self) -> None:
        """Let queued dispatches finish, then stop the dispatcher."""
        if self._dispatch_task is None:
            return
        self.channel.close()
        await self._dispatch_task
        self._dispatch_task = None

    # ------------------------------------------------------------------
    # Bridge configuration
    # ------------------------------------------------------------------

    async def create_bridge_config(self, tenant_id: str, ledger_token: str) -> AccountId:
        """Create the tenant's main network account and save the bridge."""
        with LogContext(correlation_id=generate_correlation_id(), tenant_id=tenant_id):
            # Held across account creation so a losing duplicate never funds an account
            async with self._locks.lock_async(
                "bridge_config", tenant_id, timeout=self._lock_timeout
            ):
                if self.registry.exists(tenant_id):
                    raise TenantAlreadyBridgedError(tenant_id)

                key_pair = await self.network.create_account()
                with key_pair.secret_seed:
                    self.registry.save(tenant_id, ledger_token, key_pair)
                return AccountId.main_account(key_pair.account_id)

    def delete_bridge_config(self, tenant_id: str) -> bool:
        deleted = self.registry.delete(tenant_id)
        if deleted:
            # TODO: merge the tenant's network accounts into the installation account before dropping their keys
            logger.warning(
                f"Bridge for tenant {tenant_id} deleted; its network accounts are no longer controlled"
            )
        return deleted

    # ------------------------------------------------------------------
    # Trust lines and payments
    # ------------------------------------------------------------------

    async def adjust_trust_line(
        self,
        tenant_id: str,
        address_to_trust: str,
        asset_code: str,
        maximum_amount: Decimal,
    ) -> None:
        """Let the tenant hold up to `maximum_amount` of `asset_code` issued by `address_to_trust`."""
        with LogContext(correlation_id=generate_correlation_id(), tenant_id=tenant_id):
            await self.trust_lines.set_trust_line(
                tenant_id, address_to_trust, asset_code, maximum_amount
            )

    def send_payment(self, payment: Payment) -> int:
        """
        Record the payment in the outbox; the dispatcher pays it out.

        Raises:
            UnknownTenantError: no bridge for the source tenant
            InvalidAddressError: the destination is neither an account id nor `name*domain`
        """
        with LogContext(correlation_id=generate_correlation_id(), tenant_id=payment.source_tenant_id):
            if not self.registry.exists(payment.source_tenant_id):
                raise UnknownTenantError(payment.source_tenant_id)
            if not is_account_id(payment.destination_address):
                BridgeAddress.parse(payment.destination_address)
            return self.outbox.record_and_publish(payment)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_balance(self, tenant_id: str, asset_code: str) -> Decimal:
        account = self.registry.get_account_id(tenant_id)
        return await self.network.get_balance(account, asset_code)

    async def get_balance_by_issuer(
        self,
        tenant_id: str,
        asset_code: str,
        issuer_address: str,
    ) -> Decimal:
        account = self.registry.get_account_id(tenant_id)
        issuer = await self.trust_lines.get_top_level_account_id(issuer_address)
        return await self.network.get_balance_by_issuer(account, asset_code, issuer)

    async def get_installation_account_balance(
        self,
        asset_code: str,
        issuer_address: str,
    ) -> Decimal:
        if not self.installation_account_id:
            raise InvalidConfigurationError(
                "No installation account configured", setting="installation_account_id"
            )
        issuer = await self.trust_lines.get_top_level_account_id(issuer_address)
        return await self.network.get_balance_by_issuer(
            AccountId.main_account(self.installation_account_id), asset_code, issuer
        )

    # ------------------------------------------------------------------
    # Vault issuance
    # ------------------------------------------------------------------

    async def adjust_vault_issued_assets(
        self,
        tenant_id: str,
        asset_code: str,
        amount: Decimal,
    ) -> Decimal:
        with LogContext(correlation_id=generate_correlation_id(), tenant_id=tenant_id):
            return await self.vaults.adjust_issued_assets(tenant_id, asset_code, amount)

    def tenant_has_vault(self, tenant_id: str) -> bool:
        return self.vaults.tenant_has_vault(tenant_id)

    async def get_vault_issued_assets(self, tenant_id: str, asset_code: str) -> Decimal:
        return await self.vaults.get_vault_issued_assets(tenant_id, asset_code)


def build_bridge_service(
    settings: Optional[BridgeSettings] = None,
    network: Optional[LedgerNetworkClient] = None,
    resolver: Optional[AddressResolver] = None,
) -> BridgeService:
    """
    Build a BridgeService from settings.

    Logging is configured from the settings first. Without an explicit
    network client the service runs against a SimulatedLedgerNetwork, whose
    installation account is used unless one is configured.
    """
    settings = settings or load_settings()
    configure_logging(settings)

    try:
        registry = BridgeRegistry(settings.registry_dsn)
        outbox_store = OutboxStore(settings.outbox_dsn)
    except (ValueError, OSError) as e:
        raise InvalidConfigurationError(f"Cannot open bridge storage: {e}") from e

    installation_account_id = settings.installation_account_id
    if network is None:
        simulated = SimulatedLedgerNetwork(starting_balance=settings.starting_balance)
        installation_account_id = installation_account_id or simulated.installation_account_id
        network = simulated

    read_retry = RetryConfig(
        max_retries=settings.read_retry.max_retries,
        base_delay=settings.read_retry.base_delay,
        max_delay=settings.read_retry.max_delay,
    )

    return BridgeService(
        registry=registry,
        resolver=resolver or FederationResolver(timeout_seconds=settings.federation_timeout_seconds),
        network=ResilientNetworkClient(network, read_retry),
        outbox_store=outbox_store,
        installation_account_id=installation_account_id,
        vault_lock_timeout=settings.vault_lock_timeout_seconds,
    )
