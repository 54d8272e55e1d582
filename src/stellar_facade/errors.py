"""Failure taxonomy for the facade.

Every workflow surfaces one of these to its caller; nothing is retried here.

    FacadeError
    ├── NotFound               account name absent from the registry
    ├── InvalidAccountName     empty/blank account name
    ├── BuildError             malformed or incomplete operation parameters
    ├── RegistryWriteConflict  registry file changed under a writer
    ├── RegistryCorrupt        registry storage cannot be parsed
    ├── AccountConflict        keypair clashes with one already stored
    └── GatewayError
        ├── GatewayUnavailable network-layer failure talking to Horizon/Friendbot
        ├── GatewayTimeout     bounded call ran out of time
        ├── AccountNotFound    public key has no on-ledger presence
        └── SubmissionRejected ledger refused a fully-formed transaction
"""

from typing import Any


class FacadeError(Exception):
    """Base for every error raised by the facade."""


class NotFound(FacadeError):
    def __init__(self, account_name: str) -> None:
        super().__init__(f"Unable to find account {account_name}")
        self.account_name = account_name


class InvalidAccountName(FacadeError):
    pass


class BuildError(FacadeError):
    pass


class RegistryWriteConflict(FacadeError):
    """Another writer replaced the registry between our read and our write."""


class RegistryCorrupt(FacadeError):
    """The registry file exists but does not hold a JSON object of accounts."""


class AccountConflict(FacadeError):
    pass


class GatewayError(FacadeError):
    pass


class GatewayUnavailable(GatewayError):
    pass


class GatewayTimeout(GatewayError):
    pass


class AccountNotFound(GatewayError):
    def __init__(self, public_key: str) -> None:
        super().__init__(f"Account {public_key} not found on the ledger")
        self.public_key = public_key


class SubmissionRejected(GatewayError):
    """The ledger rejected a transaction.

    `reason` is the short title Horizon reports; `result_codes` carries the
    transaction and per-operation codes (e.g. ``tx_bad_seq``, ``op_no_trust``).
    """

    def __init__(self, reason: str, result_codes: dict[str, Any] | None = None) -> None:
        self.reason = reason
        self.result_codes = result_codes or {}
        detail = f" {self.result_codes}" if self.result_codes else ""
        super().__init__(f"Submission rejected: {reason}{detail}")

    @property
    def transaction_code(self) -> str | None:
        return self.result_codes.get("transaction")
