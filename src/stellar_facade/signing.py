"""Signature sequencing for single- and multi-party transactions.

Prepaid flows split signing across a trust boundary:

    requester side                          fee-payer side
    --------------                          --------------
    build (base = payer, op source = req)
    request_phase: sign(req) -> xdr  ---->  complete_phase: xdr -> envelope
                                            sign(payer) -> submit

Only the base64 XDR string crosses the `EnvelopeChannel`, so the two phases
can run in separate processes without touching the signing logic. The
coordinator never checks whether a signer is actually required; the ledger
enforces authorization at submission.
"""

import asyncio
import logging
from typing import Any, Protocol

from stellar_sdk import Keypair, TransactionEnvelope
from stellar_sdk.exceptions import BadSignatureError

from stellar_facade.errors import BuildError

log = logging.getLogger("stellar_facade.signing")


class EnvelopeChannel(Protocol):
    async def send(self, xdr: str) -> None: ...
    async def receive(self) -> str: ...


class InProcessChannel:
    """Queue-backed stand-in for the wire between requester and fee payer."""

    def __init__(self, maxsize: int = 1) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)

    async def send(self, xdr: str) -> None:
        if not isinstance(xdr, str):
            raise TypeError(f"Only serialized envelopes cross the channel, got {type(xdr).__name__}")
        await self._queue.put(xdr)

    async def receive(self) -> str:
        return await self._queue.get()


def required_signers(envelope: TransactionEnvelope) -> list[str]:
    """Public keys whose authorization the transaction needs: base account first,
    then each distinct operation source in operation order."""
    tx = envelope.transaction
    keys = [tx.source.account_id]
    for op in tx.operations:
        if op.source is not None and op.source.account_id not in keys:
            keys.append(op.source.account_id)
    return keys


def has_signature(envelope: TransactionEnvelope, public_key: str) -> bool:
    kp = Keypair.from_public_key(public_key)
    hint = kp.signature_hint()
    tx_hash = envelope.hash()
    for sig in envelope.signatures:
        if sig.signature_hint != hint:
            continue
        try:
            kp.verify(tx_hash, sig.signature)
            return True
        except BadSignatureError:
            continue
    return False


def missing_signers(envelope: TransactionEnvelope) -> list[str]:
    return [pk for pk in required_signers(envelope) if not has_signature(envelope, pk)]


def describe(envelope: TransactionEnvelope) -> dict[str, Any]:
    """Public, log-safe summary of an envelope."""
    tx = envelope.transaction
    memo = getattr(tx.memo, "memo_text", None)
    if isinstance(memo, bytes):
        memo = memo.decode("utf-8", errors="replace")
    return {
        "hash": envelope.hash_hex(),
        "source": tx.source.account_id,
        "sequence": tx.sequence,
        "memo": memo,
        "operations": [
            {"type": op.__class__.__name__, "source": op.source.account_id if op.source else None}
            for op in tx.operations
        ],
        "signatures": len(envelope.signatures),
    }


class SigningCoordinator:
    def __init__(self, network_passphrase: str) -> None:
        self.network_passphrase = network_passphrase

    @staticmethod
    def serialize(envelope: TransactionEnvelope) -> str:
        return envelope.to_xdr()

    def deserialize(self, xdr: str) -> TransactionEnvelope:
        try:
            return TransactionEnvelope.from_xdr(xdr, self.network_passphrase)
        except Exception as e:
            raise BuildError(f"Malformed transaction envelope: {e.__class__.__name__}") from e

    def sign(self, envelope: TransactionEnvelope | str, secret_key: str) -> TransactionEnvelope:
        """Append one signature. A string is treated as serialized XDR and decoded first."""
        if isinstance(envelope, str):
            envelope = self.deserialize(envelope)
        signer = Keypair.from_secret(secret_key)
        envelope.sign(signer)
        log.debug(
            "Signed %s by [%s] (%d signature(s))",
            envelope.hash_hex()[:12], signer.public_key, len(envelope.signatures),
        )
        return envelope

    def sign_in_order(self, envelope: TransactionEnvelope, *secret_keys: str) -> TransactionEnvelope:
        """Sign with each key in turn: authorizing parties first, fee payer last."""
        for secret in secret_keys:
            envelope = self.sign(envelope, secret)
        return envelope

    async def request_phase(
        self, envelope: TransactionEnvelope, requester_secret: str, channel: EnvelopeChannel
    ) -> str:
        """Requester signs and ships the partially signed envelope; returns the XDR sent."""
        xdr = self.serialize(self.sign(envelope, requester_secret))
        log.debug("Sending partially signed envelope: %s", xdr)
        await channel.send(xdr)
        return xdr

    async def complete_phase(self, received: EnvelopeChannel | str, payer_secret: str) -> TransactionEnvelope:
        """Fee payer rebuilds the envelope from the wire form and adds the final signature."""
        xdr = received if isinstance(received, str) else await received.receive()
        envelope = self.deserialize(xdr)
        return self.sign(envelope, payer_secret)

    async def two_phase(
        self,
        envelope: TransactionEnvelope,
        requester_secret: str,
        payer_secret: str,
        channel: EnvelopeChannel,
    ) -> TransactionEnvelope:
        """Run both halves of a prepaid signing across `channel`."""
        await self.request_phase(envelope, requester_secret, channel)
        return await self.complete_phase(channel, payer_secret)
