"""Trustline state per (holder, issuer, asset code): ABSENT -> ACTIVE -> ABSENT.

A trustline is ACTIVE while the holder carries a balance entry for the asset
code with a positive limit; setting the limit to zero clears it.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Callable

import stellar_facade.constants as C
from stellar_facade.constants import TrustlineState
from stellar_facade.errors import BuildError
from stellar_facade.gateway import LedgerGateway
from stellar_facade.registry import AccountRegistry
from stellar_facade.signing import EnvelopeChannel, InProcessChannel, SigningCoordinator
from stellar_facade.txn_factory import BuildSettings, change_trust, issued_asset

log = logging.getLogger("stellar_facade.trustlines")


def _check_limit(limit: str) -> str:
    try:
        positive = Decimal(str(limit)) > 0
    except InvalidOperation:
        positive = False
    if not positive:
        raise BuildError(f"Trustline limit must be a positive amount, got {limit!r}")
    return str(limit)


class TrustlineStateMachine:
    def __init__(
        self,
        registry: AccountRegistry,
        gateway: LedgerGateway,
        coordinator: SigningCoordinator,
        settings: BuildSettings,
        *,
        channel_factory: Callable[[], EnvelopeChannel] = InProcessChannel,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.coordinator = coordinator
        self.settings = settings
        self.channel_factory = channel_factory

    async def state(self, holder_name: str, asset_code: str) -> TrustlineState:
        holder = await self.registry.get(holder_name)
        account = await self.gateway.load_account(holder.public_key)

        # Matches on asset code alone: a line to any issuer of this code counts
        active = any(b.asset_code == asset_code and b.has_positive_limit() for b in account.balances)
        return TrustlineState.ACTIVE if active else TrustlineState.ABSENT

    async def check(self, holder_name: str, asset_code: str) -> bool:
        if await self.state(holder_name, asset_code) == TrustlineState.ACTIVE:
            log.info(f"Trustline exists from [{holder_name}] for [{asset_code}]")
            return True
        log.info(f"NO Trustline from [{holder_name}] for [{asset_code}]")
        return False

    async def create(self, from_name: str, to_name: str, asset_code: str, limit: str = C.DEFAULT_TRUST_LIMIT) -> dict:
        """`from` trusts `to`'s asset and pays its own fee."""
        log.info(f"Trustline from [{from_name}] to [{to_name}] for [{asset_code}] with limit of [{limit}]")
        return await self._change_trust(from_name, to_name, asset_code, _check_limit(limit))

    async def clear(self, from_name: str, to_name: str, asset_code: str) -> dict:
        log.info(f"Clear Trustline from [{from_name}] to [{to_name}] for [{asset_code}]")
        return await self._change_trust(from_name, to_name, asset_code, C.CLEARED_TRUST_LIMIT)

    async def create_prepaid(
        self, from_name: str, to_name: str, asset_code: str, limit: str = C.DEFAULT_TRUST_LIMIT
    ) -> dict:
        """`from` authorizes the trustline, the issuer `to` pays the fee.

        The transaction is based on `to`'s account with the change-trust
        operation sourced from `from`; `from` signs first, the envelope
        crosses the channel, then `to` signs and submits.
        """
        limit = _check_limit(limit)
        log.info(f"Create Trustline from payment account [{from_name}] to [{to_name}] for [{asset_code}]")

        holder = await self.registry.get(from_name)
        issuer = await self.registry.get(to_name)
        asset = issued_asset(asset_code, issuer.public_key)

        payer_state = await self.gateway.load_account(issuer.public_key)
        envelope = self.settings.build(
            payer_state, [change_trust(asset, limit, source=holder.public_key)]
        )
        signed = await self.coordinator.two_phase(
            envelope, holder.secret_key, issuer.secret_key, self.channel_factory()
        )
        return await self.gateway.submit_transaction(signed)

    async def _change_trust(self, from_name: str, to_name: str, asset_code: str, limit: str) -> dict:
        holder = await self.registry.get(from_name)
        issuer = await self.registry.get(to_name)
        asset = issued_asset(asset_code, issuer.public_key)

        holder_state = await self.gateway.load_account(holder.public_key)
        envelope = self.settings.build(holder_state, [change_trust(asset, limit)])
        self.coordinator.sign(envelope, holder.secret_key)
        return await self.gateway.submit_transaction(envelope)
