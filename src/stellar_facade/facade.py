import logging
from typing import Any, Callable

from stellar_sdk import Asset

import stellar_facade.constants as C
from stellar_facade.errors import BuildError
from stellar_facade.gateway import Funder, LedgerGateway
from stellar_facade.registry import Account, AccountRegistry
from stellar_facade.signing import EnvelopeChannel, InProcessChannel, SigningCoordinator, describe, missing_signers
from stellar_facade.trustlines import TrustlineStateMachine
from stellar_facade.txn_factory import (
    BuildSettings,
    OpSpec,
    create_account,
    issued_asset,
    payment,
    set_options,
)

log = logging.getLogger("stellar_facade.facade")


class StellarFacade:
    """Workflows over named accounts: issuance, transfers, trustlines, funding.

    Each workflow resolves names through the registry, loads the base
    account fresh from the gateway, builds, signs in role order and submits.
    Nothing ledger-side is cached between calls.
    """

    def __init__(
        self,
        config: dict,
        registry: AccountRegistry,
        gateway: LedgerGateway,
        *,
        funder: Funder | None = None,
        channel_factory: Callable[[], EnvelopeChannel] = InProcessChannel,
    ):
        self.config = config
        self.registry = registry
        self.gateway = gateway
        self.funder = funder
        self.channel_factory = channel_factory

        self.settings = BuildSettings.from_config(config)
        self.coordinator = SigningCoordinator(self.settings.network_passphrase)
        self.trustlines = TrustlineStateMachine(
            registry, gateway, self.coordinator, self.settings, channel_factory=channel_factory
        )
        self.starting_balance = config.get("funding", {}).get("starting_balance", C.MIN_STARTING_BALANCE)

    # =========================================================================
    # Accounts
    # =========================================================================

    async def create_account(self, account_name: str) -> dict[str, str]:
        # includes the secret key
        account = await self.registry.create(account_name)
        return account.to_dict()

    async def get_account(self, account_name: str) -> dict[str, str]:
        account = await self.registry.get(account_name)
        return account.to_dict()

    async def load_account(self, account_name: str) -> dict[str, Any]:
        account = await self.registry.get(account_name)
        state = await self.gateway.load_account(account.public_key)
        return state.to_dict()

    async def list_account_balances(self) -> list[dict[str, Any]]:
        details = []
        for name, account in (await self.registry.all()).items():
            state = await self.gateway.load_account(account.public_key)
            details.append({
                "account": name,
                "flags": state.flags,
                "balances": [b.to_dict() for b in state.balances],
            })
        return details

    async def fund_account(self, from_account_name: str, to_account_name: str) -> dict:
        """Activate `to` on the ledger with a create-account op paid for by `from`."""
        log.info(
            f"Activate account with transfer from [{from_account_name}] to [{to_account_name}] "
            f"for [{C.NATIVE_CODE}] with amount of [{self.starting_balance}]"
        )
        funder = await self.registry.get(from_account_name)
        target = await self.registry.get(to_account_name)
        return await self._submit_single(funder, [create_account(target.public_key, self.starting_balance)])

    async def fund_via_friendbot(self, account_name: str) -> dict:
        if self.funder is None:
            raise BuildError("No bootstrap funding service configured")
        account = await self.registry.get(account_name)
        log.info(f"FRIEND-BOT: Funding account [{account_name}] has a public key of [{account.public_key}]")
        return await self.funder.fund(account.public_key)

    # =========================================================================
    # Issuance
    # =========================================================================

    async def create_asset(self, asset_code: str, account_name: str) -> dict[str, str]:
        account = await self.registry.get(account_name)
        asset = issued_asset(asset_code, account.public_key)
        log.info(f"Asset {asset.code} issued by [{account_name}]")
        return {"code": asset.code, "issuer": asset.issuer}

    async def configure_issuer(self, account_name: str) -> dict:
        """Set auth-required, auth-revocable and auth-immutable on the issuing account in one op."""
        issuer = await self.registry.get(account_name)
        log.info(f"Configure issuance flags on [{account_name}]")
        return await self._submit_single(issuer, [set_options(set_flags=C.ISSUER_FLAGS)])

    # =========================================================================
    # Transfers
    # =========================================================================

    async def transfer_asset(
        self,
        asset_account_name: str,
        from_account_name: str,
        to_account_name: str,
        asset_code: str,
        amount: str,
    ) -> dict:
        log.info(f"Transfer from [{from_account_name}] to [{to_account_name}] [{amount}][{asset_code}]")
        asset = await self._asset(asset_code, asset_account_name)
        sender = await self.registry.get(from_account_name)
        recipient = await self.registry.get(to_account_name)
        return await self._submit_single(sender, [payment(recipient.public_key, asset, amount)])

    async def prepaid_transfer_asset(
        self,
        asset_account_name: str,
        from_account_name: str,
        to_account_name: str,
        asset_code: str,
        amount: str,
    ) -> dict:
        """Recipient pays the fee; sender only authorizes the payment operation."""
        log.info(
            f"Prepaid transfer from [{from_account_name}] to [{to_account_name} **pays fee] [{amount}][{asset_code}]"
        )
        asset = await self._asset(asset_code, asset_account_name)
        sender = await self.registry.get(from_account_name)
        recipient = await self.registry.get(to_account_name)
        op = payment(recipient.public_key, asset, amount, source=sender.public_key)
        return await self._submit_prepaid(payer=recipient, requester=sender, operations=[op])

    async def third_party_prepaid_transfer(
        self,
        asset_account_name: str,
        third_party_account_name: str,
        from_account_name: str,
        to_account_name: str,
        asset_code: str,
        amount: str,
    ) -> dict:
        """A third account pays the fee for a sender -> recipient payment."""
        if not third_party_account_name:
            raise BuildError("A third-party fee payer account name is required")
        log.info(
            f"Prepaid transfer from [{from_account_name}] to [{to_account_name}] "
            f"[{third_party_account_name} **pays fee] [{amount}][{asset_code}]"
        )
        asset = await self._asset(asset_code, asset_account_name)
        payer = await self.registry.get(third_party_account_name)
        sender = await self.registry.get(from_account_name)
        recipient = await self.registry.get(to_account_name)
        op = payment(recipient.public_key, asset, amount, source=sender.public_key)
        return await self._submit_prepaid(payer=payer, requester=sender, operations=[op])

    async def continue_transfer(self, xdr_transaction: str, signer_account_name: str) -> dict:
        """Backend half of a prepaid flow whose first half ran elsewhere:
        add `signer`'s signature to a partially signed envelope and submit it."""
        if not signer_account_name:
            raise BuildError("The name of the account completing the transaction is required")
        signer = await self.registry.get(signer_account_name)
        envelope = await self.coordinator.complete_phase(xdr_transaction, signer.secret_key)
        log.info(f"Completing transaction {describe(envelope)} signed by [{signer_account_name}]")
        if missing := missing_signers(envelope):
            log.warning(f"Submitting {envelope.hash_hex()} without signatures from {missing}")
        return await self.gateway.submit_transaction(envelope)

    async def transfer_native(self, from_account_name: str, to_account_name: str, amount: str) -> dict:
        log.info(
            f"Transfer native {C.NATIVE_CODE} from [{from_account_name}] to [{to_account_name}] "
            f"[{amount}][{C.NATIVE_CODE}]"
        )
        sender = await self.registry.get(from_account_name)
        recipient = await self.registry.get(to_account_name)
        return await self._submit_single(sender, [payment(recipient.public_key, Asset.native(), amount)])

    # =========================================================================
    # Trustlines
    # =========================================================================

    async def check_trustline(self, account_name: str, asset_code: str) -> bool:
        return await self.trustlines.check(account_name, asset_code)

    async def create_trustline(
        self, from_account_name: str, to_account_name: str, asset_code: str, limit: str = C.DEFAULT_TRUST_LIMIT
    ) -> dict:
        return await self.trustlines.create(from_account_name, to_account_name, asset_code, limit)

    async def create_prepaid_trustline(
        self, from_account_name: str, to_account_name: str, asset_code: str, limit: str = C.DEFAULT_TRUST_LIMIT
    ) -> dict:
        return await self.trustlines.create_prepaid(from_account_name, to_account_name, asset_code, limit)

    async def clear_trustline(self, from_account_name: str, to_account_name: str, asset_code: str) -> dict:
        return await self.trustlines.clear(from_account_name, to_account_name, asset_code)

    # =========================================================================
    # Plumbing
    # =========================================================================

    async def _asset(self, asset_code: str, issuer_name: str) -> Asset:
        issuer = await self.registry.get(issuer_name)
        return issued_asset(asset_code, issuer.public_key)

    async def _submit_single(self, base: Account, operations: list[OpSpec]) -> dict:
        """Base account builds, signs alone and pays its own fee."""
        state = await self.gateway.load_account(base.public_key)
        envelope = self.settings.build(state, operations)
        self.coordinator.sign(envelope, base.secret_key)
        return await self.gateway.submit_transaction(envelope)

    async def _submit_prepaid(self, *, payer: Account, requester: Account, operations: list[OpSpec]) -> dict:
        """`payer` is the base/fee account; `requester` signs first, then the wire hop, then `payer`."""
        state = await self.gateway.load_account(payer.public_key)
        envelope = self.settings.build(state, operations)
        signed = await self.coordinator.two_phase(
            envelope, requester.secret_key, payer.secret_key, self.channel_factory()
        )
        return await self.gateway.submit_transaction(signed)
