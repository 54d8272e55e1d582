"""Narrow client for the ledger network (Horizon) and the testnet faucet (Friendbot).

The facade only ever needs two ledger calls, loading an account's state and
submitting a signed envelope, plus the faucet's single `fund` call. Those are
the `LedgerGateway` and `Funder` protocols below; `HorizonGateway` and
`FriendbotFunder` are the httpx implementations. Tests substitute an
in-memory ledger that satisfies the same protocols.

Every call is bounded: httpx enforces the per-phase timeout and the whole
request is additionally wrapped in asyncio.wait_for(), so a stalled gateway
surfaces as GatewayTimeout instead of hanging the workflow.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx
from stellar_sdk import Account as LedgerAccount
from stellar_sdk import TransactionEnvelope

import stellar_facade.constants as C
from stellar_facade.errors import (
    AccountNotFound,
    GatewayTimeout,
    GatewayUnavailable,
    SubmissionRejected,
)

log = logging.getLogger("stellar_facade.gateway")


@dataclass(slots=True)
class Balance:
    asset_type: str
    balance: str
    asset_code: str | None = None
    asset_issuer: str | None = None
    limit: str | None = None

    @classmethod
    def from_horizon(cls, b: dict) -> "Balance":
        return cls(
            asset_type=b["asset_type"],
            balance=b.get("balance", "0"),
            asset_code=b.get("asset_code"),
            asset_issuer=b.get("asset_issuer"),
            limit=b.get("limit"),
        )

    @property
    def is_native(self) -> bool:
        return self.asset_type == "native"

    def has_positive_limit(self) -> bool:
        if self.limit is None:
            return False
        try:
            return Decimal(self.limit) > 0
        except InvalidOperation:
            return False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"asset_type": self.asset_type, "balance": self.balance}
        if not self.is_native:
            d.update(asset_code=self.asset_code, asset_issuer=self.asset_issuer, limit=self.limit)
        return d


@dataclass(slots=True)
class AccountState:
    """One snapshot of an account as the ledger reports it.

    The sequence number is single-use: a transaction built from this snapshot
    must be submitted before another one is built from the same snapshot.
    """

    account_id: str
    sequence: int
    balances: list[Balance] = field(default_factory=list)
    flags: dict[str, bool] = field(default_factory=dict)
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_horizon(cls, record: dict) -> "AccountState":
        return cls(
            account_id=record.get("account_id") or record["id"],
            sequence=int(record["sequence"]),
            balances=[Balance.from_horizon(b) for b in record.get("balances", [])],
            flags=dict(record.get("flags", {})),
            raw=record,
        )

    def to_account(self) -> LedgerAccount:
        return LedgerAccount(self.account_id, self.sequence)

    def to_dict(self) -> dict[str, Any]:
        if self.raw:
            return self.raw
        return {
            "account_id": self.account_id,
            "sequence": str(self.sequence),
            "balances": [b.to_dict() for b in self.balances],
            "flags": self.flags,
        }


class LedgerGateway(Protocol):
    async def load_account(self, public_key: str) -> AccountState: ...
    async def submit_transaction(self, envelope: TransactionEnvelope | str) -> dict: ...


class Funder(Protocol):
    async def fund(self, public_key: str) -> dict: ...


def _problem(r: httpx.Response) -> dict:
    """Horizon/Friendbot errors are RFC 7807 problem documents; tolerate anything else."""
    try:
        body = r.json()
    except ValueError:
        return {"title": r.text or r.reason_phrase, "status": r.status_code}
    return body if isinstance(body, dict) else {"title": str(body), "status": r.status_code}


class _HttpService:
    def __init__(self, base_url: str, *, timeout: float, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, *, timeout: float, **kwargs) -> httpx.Response:
        try:
            return await asyncio.wait_for(
                self._client.request(method, url, timeout=timeout, **kwargs),
                timeout=timeout,
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            log.warning("%s %s timed out after %.1fs", method, url, timeout)
            raise GatewayTimeout(f"{method} {url} timed out after {timeout}s") from e
        except httpx.TransportError as e:
            log.error("%s %s failed: %s", method, url, e.__class__.__name__)
            raise GatewayUnavailable(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _raise_for_server_error(r: httpx.Response) -> None:
        if r.status_code == 504:
            raise GatewayTimeout(_problem(r).get("title", "Gateway timeout"))
        if r.status_code >= 500:
            raise GatewayUnavailable(f"{r.status_code} {_problem(r).get('title', r.reason_phrase)}")


class HorizonGateway(_HttpService):
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = C.RPC_TIMEOUT,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, client=client)
        self.submit_timeout = submit_timeout

    async def load_account(self, public_key: str) -> AccountState:
        r = await self._request("GET", f"{self.base_url}/accounts/{public_key}", timeout=self.timeout)
        if r.status_code == 404:
            raise AccountNotFound(public_key)
        self._raise_for_server_error(r)
        if r.status_code >= 400:
            raise GatewayUnavailable(f"{r.status_code} {_problem(r).get('title', r.reason_phrase)}")

        state = AccountState.from_horizon(r.json())
        log.debug("Loaded %s at sequence %s", public_key, state.sequence)
        return state

    async def submit_transaction(self, envelope: TransactionEnvelope | str) -> dict:
        xdr = envelope if isinstance(envelope, str) else envelope.to_xdr()
        r = await self._request(
            "POST", f"{self.base_url}/transactions", timeout=self.submit_timeout, data={"tx": xdr}
        )
        self._raise_for_server_error(r)
        if r.status_code >= 400:
            problem = _problem(r)
            result_codes = problem.get("extras", {}).get("result_codes", {})
            log.warning("Transaction rejected: %s %s", problem.get("title"), result_codes)
            raise SubmissionRejected(problem.get("title", "Transaction Failed"), result_codes)

        result = r.json()
        log.info("Transaction %s included in ledger %s", result.get("hash"), result.get("ledger"))
        return result


class FriendbotFunder(_HttpService):
    """Testnet faucet: gives a fresh public key its minimal native balance."""

    def __init__(self, url: str, *, timeout: float = C.SUBMIT_TIMEOUT, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(url, timeout=timeout, client=client)

    async def fund(self, public_key: str) -> dict:
        log.info("FRIEND-BOT: funding public key [%s]", public_key)
        r = await self._request("GET", self.base_url, timeout=self.timeout, params={"addr": public_key})
        self._raise_for_server_error(r)
        if r.status_code >= 400:
            # Funding an already-funded account lands here (op_already_exists)
            problem = _problem(r)
            result_codes = problem.get("extras", {}).get("result_codes", {})
            raise SubmissionRejected(problem.get("detail") or problem.get("title", "Funding failed"), result_codes)
        return r.json()
