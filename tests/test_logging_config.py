import logging

import pytest
from stellar_sdk import Keypair

from stellar_facade.logging_config import LOGGING_CONFIG, REDACTED, RedactSecretsFilter


def make_record(msg, *args):
    return logging.LogRecord("stellar_facade.test", logging.INFO, __file__, 1, msg, args, None)


class TestRedactSecretsFilter:

    def test_secret_in_args_is_redacted(self):
        secret = Keypair.random().secret
        record = make_record("seed is %s", secret)
        assert RedactSecretsFilter().filter(record)
        assert secret not in record.getMessage()
        assert REDACTED in record.getMessage()

    def test_secret_in_message_is_redacted(self):
        secret = Keypair.random().secret
        record = make_record(f"payload {{'secretKey': '{secret}'}}")
        RedactSecretsFilter().filter(record)
        assert secret not in record.getMessage()

    def test_public_keys_pass_through(self):
        pk = Keypair.random().public_key
        record = make_record("Created account [%s] publicKey = [%s]", "alice", pk)
        RedactSecretsFilter().filter(record)
        assert record.getMessage() == f"Created account [alice] publicKey = [{pk}]"
        assert record.args == ("alice", pk)

    def test_every_handler_filters(self):
        for handler in LOGGING_CONFIG["handlers"].values():
            assert "redact_secrets" in handler["filters"]


@pytest.fixture
def captured(caplog):
    """Attach caplog directly to the package logger, which does not propagate once configured."""
    logger = logging.getLogger("stellar_facade")
    logger.addHandler(caplog.handler)
    old_level = logger.level
    logger.setLevel(logging.DEBUG)
    yield caplog
    logger.removeHandler(caplog.handler)
    logger.setLevel(old_level)


@pytest.mark.asyncio
async def test_workflows_never_log_secrets(captured, facade, funded, registry):
    await funded("issuer", "alice", "bob", "sponsor")
    await facade.create_prepaid_trustline("alice", "issuer", "STE")
    await facade.create_trustline("bob", "issuer", "STE")
    await facade.transfer_asset("issuer", "issuer", "alice", "STE", "20")
    await facade.prepaid_transfer_asset("issuer", "alice", "bob", "STE", "5")
    await facade.third_party_prepaid_transfer("issuer", "sponsor", "alice", "bob", "STE", "5")
    await facade.transfer_native("alice", "bob", "1")

    assert captured.records
    text = "\n".join(r.getMessage() for r in captured.records)
    for account in (await registry.all()).values():
        assert account.public_key in text or account.name in text
        assert account.secret_key not in text


@pytest.mark.asyncio
async def test_one_message_style_per_module(captured, facade, funded):
    await funded("issuer")
    await facade.create_asset("STE", "issuer")
    await facade.create_account("carol")

    messages = [r.getMessage() for r in captured.records]
    assert "Asset STE issued by [issuer]" in messages
    assert any(m.startswith("Created account [carol] publicKey = [G") for m in messages)
    for r in captured.records:
        if r.name == "stellar_facade.facade":
            assert not r.args
        if r.name == "stellar_facade.registry":
            assert r.args
