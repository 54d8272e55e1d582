from typing import Final
from enum import StrEnum

from stellar_sdk import AuthorizationFlag

# Asset the transport layer issues/transfers when the caller doesn't name one
ASSET_CODE: Final = "STE"
NATIVE_CODE: Final = "XLM"

DEFAULT_TRUST_LIMIT: Final = "10000"
CLEARED_TRUST_LIMIT: Final = "0"  # limit of zero removes the trustline

# Peer-funded accounts start with just enough to exist on the ledger
MIN_STARTING_BALANCE: Final = "1.5"

BASE_FEE: Final = 100  # stroops per operation
TX_TIMEOUT: Final = 30  # seconds a built transaction stays valid (time bounds)
RPC_TIMEOUT: Final = 10.0
SUBMIT_TIMEOUT: Final = 30.0

ISSUER_FLAGS: Final = (
    AuthorizationFlag.AUTHORIZATION_REQUIRED
    | AuthorizationFlag.AUTHORIZATION_REVOCABLE
    | AuthorizationFlag.AUTHORIZATION_IMMUTABLE
)


class OpKind(StrEnum):
    CREATE_ACCOUNT = "create_account"
    SET_OPTIONS    = "set_options"
    CHANGE_TRUST   = "change_trust"
    PAYMENT        = "payment"


class TrustlineState(StrEnum):
    ABSENT = "ABSENT"
    ACTIVE = "ACTIVE"


class RegistryBackend(StrEnum):
    JSON   = "json"
    MEMORY = "memory"
    SQLITE = "sqlite"


__all__ = [
    "ASSET_CODE",
    "BASE_FEE",
    "CLEARED_TRUST_LIMIT",
    "DEFAULT_TRUST_LIMIT",
    "ISSUER_FLAGS",
    "MIN_STARTING_BALANCE",
    "NATIVE_CODE",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",
    "TX_TIMEOUT",

    ######
    "OpKind",
    "RegistryBackend",
    "TrustlineState",
]
