"""
Tests for issuance_bridge.vault.

Tests cover:
- Growing, shrinking and holding issuance against the simulated network
- Trust line headroom after every adjustment
- Shrinking bounded by what the main account still holds
- Vault creation (lazy, once per tenant)
- Serialization of concurrent adjustments
"""
from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from issuance_bridge.exceptions import (
    BridgeValidationError,
    InvariantViolationError,
    LockTimeoutError,
    TrustLineAdjustmentFailedError,
    UnknownTenantError,
)
from issuance_bridge.locks import LockManager
from issuance_bridge.models import (
    MAX_NETWORK_AMOUNT,
    TRUST_LINE_HEADROOM,
    AccountId,
    KeyPair,
    SecretSeed,
)
from issuance_bridge.network import SimulatedLedgerNetwork
from issuance_bridge.registry import BridgeRegistry
from issuance_bridge.vault import VaultReconciler


def _limit(network, registry, tenant_id, asset_code):
    main = registry.get_account_id(tenant_id)
    vault = registry.get_vault_account_id(tenant_id)
    return network.trust_line_limit(main.account_id, vault.account_id, asset_code)


async def _move_to_third_party(network, registry, tenant_id, asset_code, amount):
    """Pass `amount` of the tenant's vault-issued units on to a fresh account."""
    vault = registry.get_vault_account_id(tenant_id)
    other = await network.create_account()
    await network.set_trust_line_size(other.secret_seed, vault, asset_code, Decimal("1000"))
    with registry.main_key(tenant_id) as main_key:
        await network.pay(AccountId.main_account(other.account_id), amount, asset_code, main_key)
    return other


class TestGrowIssuance:
    """Raising issuance toward a larger target."""

    @pytest.mark.asyncio
    async def test_first_adjustment_creates_vault_and_issues(self, network, registry, bridged_tenant):
        """Should create the vault, then issue the full target to the main account."""
        tenant_id, main_id = bridged_tenant
        reconciler = VaultReconciler(registry, network)

        issued = await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("100"))

        assert issued == Decimal("100")
        assert reconciler.tenant_has_vault(tenant_id)
        vault = registry.get_vault_account_id(tenant_id)
        assert await network.currency_issued(vault, "EUR") == Decimal("100")
        assert await network.get_balance_by_issuer(
            AccountId.main_account(main_id), "EUR", vault
        ) == Decimal("100")

    @pytest.mark.asyncio
    async def test_grow_widens_trust_line_before_paying(self, network, registry, bridged_tenant):
        """Should set the trust line to target plus headroom before the payment."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        network.calls.clear()

        await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("100"))

        mutating = [call[0] for call in network.mutating_calls]
        assert mutating == ["create_account", "set_trust_line_size", "pay"]
        trust_call = network.mutating_calls[1]
        assert trust_call[3] == "101.0000000"
        assert _limit(network, registry, tenant_id, "EUR") == Decimal("101")

    @pytest.mark.asyncio
    async def test_grow_from_existing_issuance_pays_delta(self, network, registry, bridged_tenant):
        """Should only issue the difference between target and live issuance."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("100"))
        network.calls.clear()

        issued = await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("150"))

        assert issued == Decimal("150")
        pay_calls = [call for call in network.calls if call[0] == "pay"]
        assert len(pay_calls) == 1
        assert pay_calls[0][3] == "50.0000000"
        assert _limit(network, registry, tenant_id, "EUR") == Decimal("151")

    @pytest.mark.asyncio
    async def test_vault_created_once_per_tenant(self, network, registry, bridged_tenant):
        """Different assets should share the tenant's single vault."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)

        await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("10"))
        await reconciler.adjust_issued_assets(tenant_id, "USD", Decimal("20"))

        creates = [call for call in network.calls if call[0] == "create_account"]
        assert len(creates) == 1
        assert await reconciler.get_vault_issued_assets(tenant_id, "USD") == Decimal("20")


class TestShrinkIssuance:
    """Lowering issuance toward a smaller target."""

    @pytest.mark.asyncio
    async def test_shrink_when_main_holds_everything(self, network, registry, bridged_tenant):
        """Should burn exactly the reduction and narrow the trust line."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("100"))

        issued = await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("40"))

        assert issued == Decimal("40")
        assert await reconciler.get_vault_issued_assets(tenant_id, "EUR") == Decimal("40")
        assert _limit(network, registry, tenant_id, "EUR") == Decimal("41")

    @pytest.mark.asyncio
    async def test_shrink_limited_by_main_holdings(self, network, registry, bridged_tenant):
        """Units held elsewhere cannot be recalled; only main's holdings come back."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("100"))
        await _move_to_third_party(network, registry, tenant_id, "EUR", Decimal("70"))

        issued = await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("50"))

        assert issued == Decimal("70")
        assert await reconciler.get_vault_issued_assets(tenant_id, "EUR") == Decimal("70")
        assert _limit(network, registry, tenant_id, "EUR") == Decimal("71")

    @pytest.mark.asyncio
    async def test_shrink_with_nothing_held_skips_payment(self, network, registry, bridged_tenant):
        """Should not pay back zero units; the trust line is still adjusted."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("30"))
        await _move_to_third_party(network, registry, tenant_id, "EUR", Decimal("30"))
        network.calls.clear()

        issued = await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("0"))

        assert issued == Decimal("30")
        assert [call[0] for call in network.mutating_calls] == ["set_trust_line_size"]
        assert _limit(network, registry, tenant_id, "EUR") == Decimal("31")

    @pytest.mark.asyncio
    async def test_shrink_to_zero(self, network, registry, bridged_tenant):
        """Should burn everything and keep only the headroom on the trust line."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("25.5"))

        issued = await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("0"))

        assert issued == Decimal("0")
        assert _limit(network, registry, tenant_id, "EUR") == Decimal("1")


class TestNoOpIssuance:
    """Targets that need no network mutation."""

    @pytest.mark.asyncio
    async def test_zero_target_without_vault(self, network, registry, bridged_tenant):
        """Should return zero without creating a vault or touching the network."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        network.calls.clear()

        issued = await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("0"))

        assert issued == Decimal("0")
        assert network.calls == []
        assert not reconciler.tenant_has_vault(tenant_id)

    @pytest.mark.asyncio
    async def test_target_equal_to_issuance(self, network, registry, bridged_tenant):
        """Repeating an adjustment should converge without mutations."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("100"))
        network.calls.clear()

        issued = await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("100"))

        assert issued == Decimal("100")
        assert network.mutating_calls == []

    @pytest.mark.asyncio
    async def test_issued_without_vault_is_zero(self, network, registry, bridged_tenant):
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)

        assert await reconciler.get_vault_issued_assets(tenant_id, "EUR") == Decimal("0")


class TestValidationAndErrors:
    """Rejected inputs and failure propagation."""

    @pytest.mark.asyncio
    async def test_negative_target_rejected(self, network, registry, bridged_tenant):
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)

        with pytest.raises(BridgeValidationError):
            await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("-1"))

    @pytest.mark.asyncio
    async def test_malformed_asset_code_rejected(self, network, registry, bridged_tenant):
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)

        with pytest.raises(BridgeValidationError):
            await reconciler.adjust_issued_assets(tenant_id, "NOT-AN-ASSET", Decimal("1"))

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, network, registry):
        reconciler = VaultReconciler(registry, network)

        with pytest.raises(UnknownTenantError):
            await reconciler.adjust_issued_assets("nobody", "EUR", Decimal("1"))

    @pytest.mark.asyncio
    async def test_trust_line_failure_aborts_before_payment(self, network, registry, bridged_tenant):
        """A refused trust line must leave issuance untouched."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        network.inject_failure(
            "set_trust_line_size",
            TrustLineAdjustmentFailedError.network_failure("G" + "B" * 55, "EUR", "boom"),
        )

        with pytest.raises(TrustLineAdjustmentFailedError):
            await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("100"))

        assert not [call for call in network.calls if call[0] == "pay"]
        assert await reconciler.get_vault_issued_assets(tenant_id, "EUR") == Decimal("0")

    @pytest.mark.asyncio
    async def test_target_without_headroom_rejected(self, network, registry, bridged_tenant):
        """The trust line limit (target + 1) must stay within the network maximum."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        network.calls.clear()

        with pytest.raises(BridgeValidationError) as exc_info:
            await reconciler.adjust_issued_assets(tenant_id, "EUR", MAX_NETWORK_AMOUNT)

        assert exc_info.value.details["field"] == "target_amount"
        assert network.calls == []
        assert not reconciler.tenant_has_vault(tenant_id)

    @pytest.mark.asyncio
    async def test_largest_target_with_headroom_accepted(self, registry, bridged_tenant):
        tenant_id, _ = bridged_tenant
        network = AsyncMock()
        network.create_account.return_value = KeyPair("G" + "V" * 55, SecretSeed("S" + "V" * 55))
        network.currency_issued.return_value = Decimal("0")
        reconciler = VaultReconciler(registry, network)
        target = MAX_NETWORK_AMOUNT - TRUST_LINE_HEADROOM

        assert await reconciler.adjust_issued_assets(tenant_id, "EUR", target) == target

        limit = network.set_trust_line_size.await_args.args[3]
        assert limit == MAX_NETWORK_AMOUNT

    @pytest.mark.asyncio
    async def test_vault_recorded_elsewhere_during_creation(self, network, registry, bridged_tenant):
        """A vault recorded by another writer while ours is created must fail loudly."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)
        create_account = network.create_account

        async def create_after_other_writer():
            registry.add_vault(tenant_id, KeyPair("G" + "C" * 55, SecretSeed("S" + "C" * 55)))
            return await create_account()

        network.create_account = AsyncMock(side_effect=create_after_other_writer)

        with pytest.raises(InvariantViolationError):
            await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("1"))

        assert registry.get_vault_account_id(tenant_id) == AccountId.main_account("G" + "C" * 55)
        assert not [call for call in network.calls if call[0] in ("pay", "set_trust_line_size")]

    @pytest.mark.asyncio
    async def test_registry_rejects_second_vault(self, registry, bridged_tenant):
        tenant_id, _ = bridged_tenant
        registry.add_vault(tenant_id, KeyPair("G" + "C" * 55, SecretSeed("S" + "C" * 55)))

        with pytest.raises(InvariantViolationError):
            registry.add_vault(tenant_id, KeyPair("G" + "D" * 55, SecretSeed("S" + "D" * 55)))


class TestSecretHandling:
    """Seeds borrowed for an adjustment are wiped afterwards."""

    @pytest.mark.asyncio
    async def test_seeds_wiped_after_adjustment(self, bridged_tenant, registry):
        tenant_id, _ = bridged_tenant
        seen = []

        network = AsyncMock()
        network.currency_issued.return_value = Decimal("0")

        async def remember_key(payer_key, issuer, asset_code, limit):
            seen.append(payer_key)

        async def remember_source(destination, amount, asset_code, source_key):
            seen.append(source_key)

        network.set_trust_line_size.side_effect = remember_key
        network.pay.side_effect = remember_source
        network.create_account.return_value = KeyPair("G" + "E" * 55, SecretSeed("S" + "E" * 55))

        reconciler = VaultReconciler(registry, network)
        await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("5"))

        assert len(seen) == 2
        assert all(seed.is_wiped for seed in seen)
        assert network.create_account.return_value.secret_seed.is_wiped


class TestConcurrency:
    """Per (tenant, asset) serialization."""

    @pytest.mark.asyncio
    async def test_concurrent_adjustments_converge(self, network, registry, bridged_tenant):
        """Interleaved adjustments must each see the other's completed result."""
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)

        results = await asyncio.gather(
            reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("100")),
            reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("60")),
        )

        assert set(results) == {Decimal("100"), Decimal("60")}
        final = await reconciler.get_vault_issued_assets(tenant_id, "EUR")
        assert final in (Decimal("100"), Decimal("60"))
        assert _limit(network, registry, tenant_id, "EUR") == final + 1
        creates = [call for call in network.calls if call[0] == "create_account"]
        # One for the tenant's main account, one for the vault
        assert len(creates) == 2

    @pytest.mark.asyncio
    async def test_concurrent_assets_share_one_vault(self, network, registry, bridged_tenant):
        tenant_id, _ = bridged_tenant
        reconciler = VaultReconciler(registry, network)

        await asyncio.gather(
            reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("10")),
            reconciler.adjust_issued_assets(tenant_id, "USD", Decimal("20")),
            reconciler.adjust_issued_assets(tenant_id, "GBP", Decimal("30")),
        )

        creates = [call for call in network.calls if call[0] == "create_account"]
        assert len(creates) == 2
        assert await reconciler.get_vault_issued_assets(tenant_id, "GBP") == Decimal("30")

    @pytest.mark.asyncio
    async def test_held_lock_times_out(self, network, registry, bridged_tenant):
        tenant_id, _ = bridged_tenant
        locks = LockManager(default_timeout=0.05)
        reconciler = VaultReconciler(registry, network, lock_manager=locks)
        locks.try_acquire("vault", f"{tenant_id}:EUR", "someone-else")

        with pytest.raises(LockTimeoutError):
            await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("1"))

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, network, registry, bridged_tenant):
        tenant_id, _ = bridged_tenant
        locks = LockManager()
        reconciler = VaultReconciler(registry, network, lock_manager=locks)
        network.inject_failure("create_account", RuntimeError("down"))

        with pytest.raises(RuntimeError):
            await reconciler.adjust_issued_assets(tenant_id, "EUR", Decimal("1"))

        assert not locks.is_locked("vault", f"{tenant_id}:EUR")
        assert not locks.is_locked("vault_creation", tenant_id)


class TestSqliteBackedReconciliation:

    @pytest.mark.asyncio
    async def test_vault_survives_registry_reopen(self, tmp_path):
        network = SimulatedLedgerNetwork()
        dsn = f"sqlite:///{tmp_path / 'bridges.db'}"
        registry = BridgeRegistry(dsn)
        key_pair = await network.create_account()
        registry.save("tenant-a", "token", key_pair)
        await VaultReconciler(registry, network).adjust_issued_assets("tenant-a", "EUR", Decimal("12"))
        registry.close()

        reopened = BridgeRegistry(dsn)
        reconciler = VaultReconciler(reopened, network)
        assert reconciler.tenant_has_vault("tenant-a")
        assert await reconciler.adjust_issued_assets("tenant-a", "EUR", Decimal("2")) == Decimal("2")
        reopened.close()
