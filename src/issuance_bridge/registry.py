"""Tenant bridge registry: durable tenant -> network account mapping."""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from .exceptions import (
    InvariantViolationError,
    TenantAlreadyBridgedError,
    UnknownTenantError,
)
from .models import AccountBridge, AccountId, KeyPair, NoVault, SecretSeed, Vault

logger = logging.getLogger(__name__)

_COLUMNS = (
    "tenant_id",
    "ledger_token",
    "main_account_id",
    "main_secret_seed",
    "vault_account_id",
    "vault_secret_seed",
    "created_at",
)


class BridgeRegistry:
    """
    Bridge storage supporting SQLite (`sqlite:///path`) and process memory
    (`memory://`).

    The registry owns every bridge record and all key material. Reads hand
    out freshly materialized seeds; use `checkout()` or `main_key()` so they
    are wiped as soon as the borrowing call finishes.
    """

    def __init__(self, dsn: str = "memory://"):
        self._dsn = dsn
        self._lock = threading.RLock()
        self._sqlite_conn: Optional[sqlite3.Connection] = None
        self._rows: Dict[str, Dict[str, Any]] = {}

        if dsn.startswith("sqlite:///"):
            path = Path(dsn.removeprefix("sqlite:///"))
            path.parent.mkdir(parents=True, exist_ok=True)
            self._sqlite_conn = sqlite3.connect(path, check_same_thread=False)
            self._sqlite_conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account_bridges (
                    tenant_id TEXT PRIMARY KEY,
                    ledger_token TEXT NOT NULL,
                    main_account_id TEXT NOT NULL,
                    main_secret_seed TEXT NOT NULL,
                    vault_account_id TEXT,
                    vault_secret_seed TEXT,
                    created_at TEXT NOT NULL,
                    CHECK ((vault_account_id IS NULL) = (vault_secret_seed IS NULL))
                )
                """
            )
            self._sqlite_conn.commit()
        elif not dsn.startswith("memory://"):
            raise ValueError(f"Unsupported registry DSN: {dsn}")

    def close(self) -> None:
        if self._sqlite_conn is not None:
            self._sqlite_conn.close()
            self._sqlite_conn = None

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    def _load_row(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        if self._sqlite_conn:
            row = self._sqlite_conn.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM account_bridges WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
            return dict(zip(_COLUMNS, row)) if row else None
        row = self._rows.get(tenant_id)
        return dict(row) if row else None

    @staticmethod
    def _row_to_bridge(row: Dict[str, Any]) -> AccountBridge:
        if row["vault_account_id"] is not None:
            vault = Vault(
                account_id=row["vault_account_id"],
                secret_seed=SecretSeed(row["vault_secret_seed"]),
            )
        else:
            vault = NoVault()
        return AccountBridge(
            tenant_id=row["tenant_id"],
            ledger_token=row["ledger_token"],
            main_account_id=row["main_account_id"],
            main_secret_seed=SecretSeed(row["main_secret_seed"]),
            vault=vault,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Registry contract
    # ------------------------------------------------------------------

    def save(self, tenant_id: str, ledger_token: str, key_pair: KeyPair) -> None:
        """Store a new bridge for `tenant_id` with `key_pair` as its main account."""
        row = {
            "tenant_id": tenant_id,
            "ledger_token": ledger_token,
            "main_account_id": key_pair.account_id,
            "main_secret_seed": key_pair.secret_seed.reveal(),
            "vault_account_id": None,
            "vault_secret_seed": None,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            if self._sqlite_conn:
                try:
                    self._sqlite_conn.execute(
                        f"INSERT INTO account_bridges ({', '.join(_COLUMNS)}) "
                        f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                        tuple(row[c] for c in _COLUMNS),
                    )
                    self._sqlite_conn.commit()
                except sqlite3.IntegrityError as e:
                    self._sqlite_conn.rollback()
                    raise TenantAlreadyBridgedError(tenant_id) from e
            else:
                if tenant_id in self._rows:
                    raise TenantAlreadyBridgedError(tenant_id)
                self._rows[tenant_id] = row
        logger.info(f"Bridge saved for tenant {tenant_id} (account {key_pair.account_id})")

    def exists(self, tenant_id: str) -> bool:
        with self._lock:
            return self._load_row(tenant_id) is not None

    def get(self, tenant_id: str) -> AccountBridge:
        """Load the bridge for `tenant_id`. The caller must wipe its seeds."""
        with self._lock:
            row = self._load_row(tenant_id)
        if row is None:
            raise UnknownTenantError(tenant_id)
        return self._row_to_bridge(row)

    def delete(self, tenant_id: str) -> bool:
        with self._lock:
            if self._sqlite_conn:
                cur = self._sqlite_conn.execute(
                    "DELETE FROM account_bridges WHERE tenant_id = ?", (tenant_id,)
                )
                self._sqlite_conn.commit()
                deleted = cur.rowcount > 0
            else:
                deleted = self._rows.pop(tenant_id, None) is not None
        if deleted:
            logger.info(f"Bridge deleted for tenant {tenant_id}")
        return deleted

    def add_vault(self, tenant_id: str, key_pair: KeyPair) -> None:
        """
        Attach a vault account to the tenant's bridge.

        Raises:
            UnknownTenantError: no bridge for the tenant
            InvariantViolationError: the tenant already has a vault
        """
        seed = key_pair.secret_seed.reveal()
        with self._lock:
            row = self._load_row(tenant_id)
            if row is None:
                raise UnknownTenantError(tenant_id)
            if row["vault_account_id"] is not None:
                raise InvariantViolationError(
                    f"A vault account already exists for tenant '{tenant_id}'"
                )

            if self._sqlite_conn:
                self._sqlite_conn.execute(
                    """
                    UPDATE account_bridges
                    SET vault_account_id = ?, vault_secret_seed = ?
                    WHERE tenant_id = ? AND vault_account_id IS NULL
                    """,
                    (key_pair.account_id, seed, tenant_id),
                )
                self._sqlite_conn.commit()
            else:
                self._rows[tenant_id]["vault_account_id"] = key_pair.account_id
                self._rows[tenant_id]["vault_secret_seed"] = seed

        logger.info(f"Vault {key_pair.account_id} added for tenant {tenant_id}")

    @contextmanager
    def checkout(self, tenant_id: str) -> Generator[AccountBridge, None, None]:
        """
        Borrow the tenant's bridge for the duration of one call.

        Usage:
            with registry.checkout("tenant") as bridge:
                await client.pay(..., bridge.main_secret_seed)
            # every seed on `bridge` is wiped here
        """
        bridge = self.get(tenant_id)
        try:
            yield bridge
        finally:
            bridge.wipe_secrets()

    @contextmanager
    def main_key(self, tenant_id: str) -> Generator[SecretSeed, None, None]:
        """Borrow only the tenant's main account seed; wiped on exit."""
        with self.checkout(tenant_id) as bridge:
            yield bridge.main_secret_seed

    def get_account_id(self, tenant_id: str) -> AccountId:
        with self.checkout(tenant_id) as bridge:
            return bridge.main_account

    def get_vault_account_id(self, tenant_id: str) -> Optional[AccountId]:
        with self.checkout(tenant_id) as bridge:
            return bridge.vault_account
