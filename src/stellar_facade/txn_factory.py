import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from stellar_sdk import Asset, TransactionBuilder, TransactionEnvelope
from stellar_sdk import Account as LedgerAccount

import stellar_facade.constants as C
from stellar_facade.constants import OpKind
from stellar_facade.errors import BuildError
from stellar_facade.gateway import AccountState

log = logging.getLogger("stellar_facade.txn")


@dataclass(frozen=True, slots=True)
class OpSpec:
    """One operation to append. `source` is the operation-source public key;
    None means the operation is authorized by the transaction's base account."""
    kind: OpKind
    params: dict[str, Any] = field(default_factory=dict)
    source: str | None = None


AppendFn = Callable[[TransactionBuilder, dict, str | None], None]


@dataclass
class OpBuilder:
    required: tuple[str, ...]
    append: AppendFn


REGISTRY: dict[OpKind, OpBuilder] = {}


def register_op(kind: OpKind, *required: str):
    """
    Decorator to register an operation appender against its kind, along with
    the params it cannot do without.
    """
    def wrap(fn: AppendFn):
        REGISTRY[kind] = OpBuilder(required=required, append=fn)
        return fn
    return wrap


@register_op(OpKind.CREATE_ACCOUNT, "destination", "starting_balance")
def _append_create_account(builder: TransactionBuilder, params: dict, source: str | None) -> None:
    builder.append_create_account_op(
        destination=params["destination"],
        starting_balance=str(params["starting_balance"]),
        source=source,
    )


@register_op(OpKind.SET_OPTIONS)
def _append_set_options(builder: TransactionBuilder, params: dict, source: str | None) -> None:
    set_flags = params.get("set_flags")
    clear_flags = params.get("clear_flags")
    if set_flags is None and clear_flags is None:
        raise BuildError("set_options operation needs set_flags or clear_flags")
    builder.append_set_options_op(set_flags=set_flags, clear_flags=clear_flags, source=source)


@register_op(OpKind.CHANGE_TRUST, "asset", "limit")
def _append_change_trust(builder: TransactionBuilder, params: dict, source: str | None) -> None:
    builder.append_change_trust_op(asset=params["asset"], limit=str(params["limit"]), source=source)


@register_op(OpKind.PAYMENT, "destination", "asset", "amount")
def _append_payment(builder: TransactionBuilder, params: dict, source: str | None) -> None:
    builder.append_payment_op(
        destination=params["destination"],
        asset=params["asset"],
        amount=str(params["amount"]),
        source=source,
    )


def issued_asset(asset_code: str, issuer: str) -> Asset:
    try:
        return Asset(asset_code, issuer)
    except (ValueError, TypeError) as e:
        raise BuildError(f"Invalid asset {asset_code!r}: {e}") from e


def create_account(destination: str, starting_balance: str, *, source: str | None = None) -> OpSpec:
    return OpSpec(OpKind.CREATE_ACCOUNT, {"destination": destination, "starting_balance": starting_balance}, source)


def set_options(*, set_flags: int | None = None, clear_flags: int | None = None, source: str | None = None) -> OpSpec:
    return OpSpec(OpKind.SET_OPTIONS, {"set_flags": set_flags, "clear_flags": clear_flags}, source)


def change_trust(asset: Asset, limit: str, *, source: str | None = None) -> OpSpec:
    return OpSpec(OpKind.CHANGE_TRUST, {"asset": asset, "limit": limit}, source)


def payment(destination: str, asset: Asset, amount: str, *, source: str | None = None) -> OpSpec:
    return OpSpec(OpKind.PAYMENT, {"destination": destination, "asset": asset, "amount": amount}, source)


def build(
    base_state: AccountState | LedgerAccount,
    operations: list[OpSpec],
    *,
    network_passphrase: str,
    base_fee: int = C.BASE_FEE,
    timeout: int = C.TX_TIMEOUT,
    memo: str | None = None,
) -> TransactionEnvelope:
    """Build an unsigned transaction against `base_state`'s next sequence number.

    Operations are appended in the order given; the ledger applies them
    left-to-right and the whole transaction fails if any one does.

    Raises:
        BuildError: no operations, an unregistered kind, a missing required
            parameter, or a value the SDK refuses (bad key, bad amount...).
    """
    if not operations:
        raise BuildError("A transaction needs at least one operation")

    source_account = base_state.to_account() if isinstance(base_state, AccountState) else base_state
    builder = TransactionBuilder(
        source_account=source_account,
        network_passphrase=network_passphrase,
        base_fee=base_fee,
    )

    for op in operations:
        spec = REGISTRY.get(op.kind)
        if spec is None:
            raise BuildError(f"Unsupported operation kind: {op.kind!r}")
        missing = [k for k in spec.required if op.params.get(k) in (None, "")]
        if missing:
            raise BuildError(f"{op.kind} operation is missing {', '.join(missing)}")
        try:
            spec.append(builder, op.params, op.source)
        except (ValueError, TypeError, ArithmeticError) as e:
            raise BuildError(f"Invalid {op.kind} operation: {e}") from e
        log.debug("Appended %s (source=%s)", op.kind, op.source or "<base>")

    try:
        if memo:
            builder.add_text_memo(memo)
        if timeout:
            builder.set_timeout(timeout)
        envelope = builder.build()
    except (ValueError, TypeError, ArithmeticError) as e:
        raise BuildError(f"Unable to build transaction: {e}") from e

    log.debug(
        "Built transaction for %s seq=%s with %d op(s)",
        source_account.account.account_id,
        envelope.transaction.sequence,
        len(operations),
    )
    return envelope


@dataclass(frozen=True, slots=True)
class BuildSettings:
    network_passphrase: str
    base_fee: int = C.BASE_FEE
    timeout: int = C.TX_TIMEOUT

    @classmethod
    def from_config(cls, conf: dict) -> "BuildSettings":
        return cls(
            network_passphrase=conf["horizon"]["network_passphrase"],
            base_fee=int(conf["horizon"].get("base_fee", C.BASE_FEE)),
            timeout=int(conf["timeout"].get("transaction", C.TX_TIMEOUT)),
        )

    def build(self, base_state: AccountState | LedgerAccount, operations: list[OpSpec], *, memo: str | None = None) -> TransactionEnvelope:
        return build(
            base_state,
            operations,
            network_passphrase=self.network_passphrase,
            base_fee=self.base_fee,
            timeout=self.timeout,
            memo=memo,
        )
