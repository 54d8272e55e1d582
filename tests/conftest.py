"""
Shared pytest fixtures: an in-memory ledger that enforces signatures and
sequence numbers, a fake faucet, and a facade wired to both.
"""

import copy
from decimal import Decimal

import pytest
from stellar_sdk import Network, TransactionEnvelope
from stellar_sdk.operation import ChangeTrust, CreateAccount, Payment, SetOptions

from stellar_facade.errors import AccountNotFound, SubmissionRejected
from stellar_facade.facade import StellarFacade
from stellar_facade.gateway import AccountState, Balance
from stellar_facade.registry import InMemoryRegistry
from stellar_facade.signing import missing_signers

PASSPHRASE = Network.TESTNET_NETWORK_PASSPHRASE
STROOP = Decimal("0.0000001")

FLAG_NAMES = {1: "auth_required", 2: "auth_revocable", 4: "auth_immutable", 8: "auth_clawback_enabled"}


class OpFailed(Exception):
    def __init__(self, code: str):
        self.code = code


class FakeLedger:
    """Just enough of a ledger to tell a correctly signed, correctly sequenced
    transaction from one that isn't, and to apply the four operation kinds."""

    def __init__(self, passphrase: str = PASSPHRASE):
        self.passphrase = passphrase
        self.accounts: dict[str, dict] = {}
        self.submitted: list[TransactionEnvelope] = []
        self.ledger_index = 100

    # ---- setup / inspection -------------------------------------------------

    def fund(self, public_key: str, xlm: str = "10000") -> None:
        self.accounts[public_key] = {
            "sequence": self.ledger_index << 32,
            "native": Decimal(xlm),
            "lines": {},
            "flags": {name: False for name in FLAG_NAMES.values()},
        }

    def native(self, public_key: str) -> Decimal:
        return self.accounts[public_key]["native"]

    def line(self, public_key: str, code: str, issuer: str) -> dict | None:
        return self.accounts[public_key]["lines"].get((code, issuer))

    def snapshot(self, public_key: str) -> AccountState:
        acct = self.accounts.get(public_key)
        if acct is None:
            raise AccountNotFound(public_key)
        balances = [
            Balance(
                asset_type="credit_alphanum4" if len(code) <= 4 else "credit_alphanum12",
                balance=str(line["balance"]),
                asset_code=code,
                asset_issuer=issuer,
                limit=str(line["limit"]),
            )
            for (code, issuer), line in acct["lines"].items()
        ]
        balances.append(Balance(asset_type="native", balance=str(acct["native"])))
        return AccountState(public_key, acct["sequence"], balances, dict(acct["flags"]))

    # ---- LedgerGateway ------------------------------------------------------

    async def load_account(self, public_key: str) -> AccountState:
        return self.snapshot(public_key)

    async def submit_transaction(self, envelope: TransactionEnvelope | str) -> dict:
        if isinstance(envelope, str):
            envelope = TransactionEnvelope.from_xdr(envelope, self.passphrase)
        tx = envelope.transaction
        base = tx.source.account_id

        if base not in self.accounts:
            raise SubmissionRejected("Transaction Failed", {"transaction": "tx_no_source_account"})
        if missing_signers(envelope):
            raise SubmissionRejected("Transaction Failed", {"transaction": "tx_bad_auth"})
        if tx.sequence != self.accounts[base]["sequence"] + 1:
            raise SubmissionRejected("Transaction Failed", {"transaction": "tx_bad_seq"})

        staged = copy.deepcopy(self.accounts)
        staged[base]["sequence"] = tx.sequence
        staged[base]["native"] -= Decimal(tx.fee) * STROOP

        codes = []
        failed = False
        for op in tx.operations:
            source = op.source.account_id if op.source is not None else base
            try:
                self._apply(staged, source, op)
                codes.append("op_success")
            except OpFailed as e:
                codes.append(e.code)
                failed = True

        if failed:
            # fee and sequence are consumed even when an operation fails
            self.accounts[base]["sequence"] = tx.sequence
            self.accounts[base]["native"] -= Decimal(tx.fee) * STROOP
            raise SubmissionRejected("Transaction Failed", {"transaction": "tx_failed", "operations": codes})

        self.accounts = staged
        self.submitted.append(envelope)
        self.ledger_index += 1
        return {"hash": envelope.hash_hex(), "ledger": self.ledger_index, "successful": True}

    # ---- operation semantics ------------------------------------------------

    def _apply(self, accounts: dict, source: str, op) -> None:
        if source not in accounts:
            raise OpFailed("op_no_source_account")
        if isinstance(op, CreateAccount):
            self._create_account(accounts, source, op)
        elif isinstance(op, ChangeTrust):
            self._change_trust(accounts, source, op)
        elif isinstance(op, Payment):
            self._payment(accounts, source, op)
        elif isinstance(op, SetOptions):
            self._set_options(accounts, source, op)
        else:
            raise OpFailed("op_not_supported")

    def _create_account(self, accounts, source, op: CreateAccount) -> None:
        if op.destination in accounts:
            raise OpFailed("op_already_exists")
        amount = Decimal(op.starting_balance)
        if accounts[source]["native"] < amount:
            raise OpFailed("op_underfunded")
        accounts[source]["native"] -= amount
        accounts[op.destination] = {
            "sequence": self.ledger_index << 32,
            "native": amount,
            "lines": {},
            "flags": {name: False for name in FLAG_NAMES.values()},
        }

    def _change_trust(self, accounts, source, op: ChangeTrust) -> None:
        key = (op.asset.code, op.asset.issuer)
        if op.asset.issuer not in accounts:
            raise OpFailed("op_no_issuer")
        limit = Decimal(op.limit)
        lines = accounts[source]["lines"]
        if limit == 0:
            line = lines.get(key)
            if line is not None and line["balance"] > 0:
                raise OpFailed("op_invalid_limit")
            lines.pop(key, None)
            return
        line = lines.setdefault(key, {"balance": Decimal(0), "limit": limit})
        line["limit"] = limit

    def _payment(self, accounts, source, op: Payment) -> None:
        destination = op.destination.account_id
        if destination not in accounts:
            raise OpFailed("op_no_destination")
        amount = Decimal(op.amount)

        if op.asset.is_native():
            if accounts[source]["native"] < amount:
                raise OpFailed("op_underfunded")
            accounts[source]["native"] -= amount
            accounts[destination]["native"] += amount
            return

        key = (op.asset.code, op.asset.issuer)
        if source != op.asset.issuer:
            line = accounts[source]["lines"].get(key)
            if line is None:
                raise OpFailed("op_src_no_trust")
            if line["balance"] < amount:
                raise OpFailed("op_underfunded")
            line["balance"] -= amount
        if destination != op.asset.issuer:
            line = accounts[destination]["lines"].get(key)
            if line is None:
                raise OpFailed("op_no_trust")
            if line["balance"] + amount > line["limit"]:
                raise OpFailed("op_line_full")
            line["balance"] += amount

    def _set_options(self, accounts, source, op: SetOptions) -> None:
        flags = accounts[source]["flags"]
        for value, present in ((op.set_flags, True), (op.clear_flags, False)):
            if value is None:
                continue
            for bit, name in FLAG_NAMES.items():
                if int(value) & bit:
                    flags[name] = present


class FakeFunder:
    def __init__(self, ledger: FakeLedger, xlm: str = "10000"):
        self.ledger = ledger
        self.xlm = xlm

    async def fund(self, public_key: str) -> dict:
        if public_key in self.ledger.accounts:
            raise SubmissionRejected(
                "createAccountAlreadyExist", {"transaction": "tx_failed", "operations": ["op_already_exists"]}
            )
        self.ledger.fund(public_key, self.xlm)
        return {"successful": True, "ledger": self.ledger.ledger_index}


@pytest.fixture
def conf(tmp_path):
    """Config dict shaped like config.toml, with an in-memory registry."""
    return {
        "horizon": {"url": "https://horizon.test", "network_passphrase": PASSPHRASE, "base_fee": 100},
        "friendbot": {"url": "https://friendbot.test"},
        "registry": {"backend": "memory", "path": str(tmp_path / "registry.json")},
        "timeout": {"rpc": 1.0, "submit": 1.0, "transaction": 30},
        "assets": {"code": "STE", "trust_limit": "10000"},
        "funding": {"starting_balance": "1.5"},
        "server": {"host": "127.0.0.1", "port": 3000},
    }


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def registry():
    return InMemoryRegistry()


@pytest.fixture
def funder(ledger):
    return FakeFunder(ledger)


@pytest.fixture
def facade(conf, registry, ledger, funder):
    return StellarFacade(conf, registry, ledger, funder=funder)


@pytest.fixture
def funded(registry, ledger):
    """Register named accounts and give each a native balance on the fake ledger."""
    async def _funded(*names, xlm="10000"):
        accounts = []
        for name in names:
            account = await registry.create(name)
            ledger.fund(account.public_key, xlm)
            accounts.append(account)
        return accounts if len(accounts) > 1 else accounts[0]
    return _funded
