"""
Address parsing and resolution.

Addresses come in federation form, `name*domain`. Resolution turns them
into an AccountId through the domain's federation server; a memo returned
by the server marks a sub-account on a shared top-level account. Raw
network account ids are accepted too and resolve to themselves.
"""
from __future__ import annotations

import logging
import re
import tomllib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from .exceptions import InvalidAddressError, ResolutionFailedError
from .models import AccountId
from .retry import READ_RETRY_CONFIG, RetryConfig, retry_async

logger = logging.getLogger(__name__)

ACCOUNT_ID_PATTERN = re.compile(r"^G[A-Z2-7]{55}$")
_NAME_PATTERN = re.compile(r"^[^*\s>]+$")
_DOMAIN_PATTERN = re.compile(r"^(?=.{1,253}$)([A-Za-z0-9-]+\.)+[A-Za-z]{2,}$")


def is_account_id(value: str) -> bool:
    return bool(ACCOUNT_ID_PATTERN.match(value))


@dataclass(frozen=True)
class BridgeAddress:
    """A parsed federation address."""
    name: str
    domain: str

    @classmethod
    def parse(cls, address: str) -> "BridgeAddress":
        if not isinstance(address, str) or address.count("*") != 1:
            raise InvalidAddressError(str(address))
        name, domain = address.split("*")
        if not _NAME_PATTERN.match(name):
            raise InvalidAddressError(address, "name part is empty or malformed")
        if not _DOMAIN_PATTERN.match(domain):
            raise InvalidAddressError(address, "domain part is malformed")
        return cls(name=name, domain=domain.lower())

    def __str__(self) -> str:
        return f"{self.name}*{self.domain}"


class AddressResolver(ABC):
    """Turns an address string into a network AccountId."""

    @abstractmethod
    async def resolve(self, address: str) -> AccountId:
        """Resolve `address`.

        Raises:
            InvalidAddressError: the address cannot be parsed
            ResolutionFailedError: the lookup failed or found nothing
        """


class StaticAddressResolver(AddressResolver):
    """Resolver backed by an in-memory directory, for simulated networks and tests."""

    def __init__(self, directory: Optional[Dict[str, AccountId]] = None):
        self._directory: Dict[str, AccountId] = {}
        for address, account in (directory or {}).items():
            self.register(address, account)

    def register(self, address: str, account: AccountId) -> None:
        self._directory[str(BridgeAddress.parse(address))] = account

    async def resolve(self, address: str) -> AccountId:
        if is_account_id(address):
            return AccountId.main_account(address)
        parsed = BridgeAddress.parse(address)
        account = self._directory.get(str(parsed))
        if account is None:
            raise ResolutionFailedError(address, "address not found")
        return account


class FederationResolver(AddressResolver):
    """
    Resolves addresses against federation servers over HTTPS.

    The federation endpoint is discovered from the domain's
    `/.well-known/stellar.toml`. Lookups are read-only and retried with
    bounded backoff on transport errors.
    """

    TOML_PATH = "/.well-known/stellar.toml"

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        retry_config: RetryConfig = READ_RETRY_CONFIG,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._timeout_seconds = timeout_seconds
        self._retry_config = RetryConfig(
            max_retries=retry_config.max_retries,
            base_delay=retry_config.base_delay,
            max_delay=retry_config.max_delay,
            jitter=retry_config.jitter,
            retryable_exceptions=(httpx.TransportError,),
        )
        self._client = client
        self._federation_servers: Dict[str, str] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_seconds))
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def resolve(self, address: str) -> AccountId:
        if is_account_id(address):
            return AccountId.main_account(address)

        parsed = BridgeAddress.parse(address)
        server = await self._federation_server(parsed)
        try:
            response = await retry_async(
                self._get,
                server,
                params={"q": str(parsed), "type": "name"},
                config=self._retry_config,
            )
        except httpx.HTTPError as e:
            raise ResolutionFailedError(address, f"federation request failed: {e}") from e

        if response.status_code == 404:
            raise ResolutionFailedError(address, "address not found")
        if response.status_code != 200:
            raise ResolutionFailedError(
                address, f"federation server answered {response.status_code}"
            )

        try:
            record = response.json()
        except ValueError as e:
            raise ResolutionFailedError(address, "federation response is not JSON") from e

        if not isinstance(record, dict):
            raise ResolutionFailedError(address, "federation response is not an object")

        account_id = record.get("account_id")
        if not account_id or not is_account_id(account_id):
            raise ResolutionFailedError(address, "federation response has no valid account_id")

        memo = record.get("memo")
        logger.debug(f"Resolved {parsed} to {account_id} (memo={memo!r})")
        if memo is not None and str(memo) != "":
            return AccountId.with_sub_account(account_id, str(memo))
        return AccountId.main_account(account_id)

    async def _get(self, url: str, params: Optional[dict] = None) -> httpx.Response:
        client = await self._get_client()
        return await client.get(url, params=params)

    async def _federation_server(self, address: BridgeAddress) -> str:
        cached = self._federation_servers.get(address.domain)
        if cached:
            return cached

        url = f"https://{address.domain}{self.TOML_PATH}"
        try:
            response = await retry_async(self._get, url, config=self._retry_config)
        except httpx.HTTPError as e:
            raise ResolutionFailedError(str(address), f"could not fetch {url}: {e}") from e
        if response.status_code != 200:
            raise ResolutionFailedError(
                str(address), f"{url} answered {response.status_code}"
            )

        try:
            document = tomllib.loads(response.text)
        except tomllib.TOMLDecodeError as e:
            raise ResolutionFailedError(str(address), f"{url} is not valid TOML") from e

        server = document.get("FEDERATION_SERVER")
        if not isinstance(server, str) or not server.startswith("https://"):
            raise ResolutionFailedError(str(address), "domain publishes no FEDERATION_SERVER")

        self._federation_servers[address.domain] = server
        return server
