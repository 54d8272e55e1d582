"""Durable mapping from human-readable account names to Stellar keypairs."""

import asyncio
import json
import logging
import os
import sqlite3
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from stellar_sdk import Keypair

from stellar_facade.constants import RegistryBackend
from stellar_facade.errors import (
    AccountConflict,
    BuildError,
    InvalidAccountName,
    NotFound,
    RegistryCorrupt,
    RegistryWriteConflict,
)

log = logging.getLogger("stellar_facade.registry")


@dataclass(frozen=True, slots=True)
class Account:
    name: str
    public_key: str
    secret_key: str = field(repr=False)

    @property
    def keypair(self) -> Keypair:
        return Keypair.from_secret(self.secret_key)

    def to_dict(self) -> dict[str, str]:
        return {"publicKey": self.public_key, "secretKey": self.secret_key}

    @classmethod
    def from_dict(cls, name: str, d: dict[str, str]) -> "Account":
        return cls(name=name, public_key=d["publicKey"], secret_key=d["secretKey"])

    @classmethod
    def generate(cls, name: str) -> "Account":
        pair = Keypair.random()
        return cls(name=name, public_key=pair.public_key, secret_key=pair.secret)


def _check_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidAccountName(f"Account name must be a non-empty string, got {name!r}")
    return name


def _check_keypair(account: Account) -> None:
    derived = Keypair.from_secret(account.secret_key).public_key
    if derived != account.public_key:
        raise BuildError(f"publicKey {account.public_key} does not derive from the supplied secret")


class AccountRegistry(Protocol):
    async def create(self, name: str) -> Account: ...
    async def get(self, name: str) -> Account: ...
    async def exists(self, name: str) -> bool: ...
    async def set(self, name: str, account: Account) -> Account: ...
    async def all(self) -> dict[str, Account]: ...


class _MappingRegistry:
    """Whole-mapping read-modify-write behind a single-writer lock.

    Subclasses supply `_read` (returning the mapping plus an opaque token
    describing what was read) and `_write` (which may use the token to detect
    that someone else wrote in between).
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def _read(self) -> tuple[dict[str, dict], Any]:
        raise NotImplementedError

    async def _write(self, data: dict[str, dict], token: Any) -> None:
        raise NotImplementedError

    async def all(self) -> dict[str, Account]:
        data, _ = await self._read()
        return {name: Account.from_dict(name, d) for name, d in data.items()}

    async def get(self, name: str) -> Account:
        data, _ = await self._read()
        found = data.get(name)
        if not found:
            raise NotFound(name)
        return Account.from_dict(name, found)

    async def exists(self, name: str) -> bool:
        data, _ = await self._read()
        return name in data

    async def create(self, name: str) -> Account:
        """Return the named account, generating and persisting a keypair only if it is new."""
        _check_name(name)
        async with self._lock:
            data, token = await self._read()
            if name in data:
                log.debug("Account [%s] already exists", name)
                return Account.from_dict(name, data[name])

            account = Account.generate(name)
            data[name] = account.to_dict()
            await self._write(data, token)

        log.info("Created account [%s] publicKey = [%s]", name, account.public_key)
        return account

    async def set(self, name: str, account: Account) -> Account:
        """Store an externally supplied keypair under `name`.

        Keypairs are immutable once stored: re-setting the same pair is a no-op,
        a different pair for an existing name is refused, and so is a public key
        already stored under another name.
        """
        _check_name(name)
        _check_keypair(account)
        async with self._lock:
            data, token = await self._read()
            existing = data.get(name)
            if existing is not None:
                if existing["publicKey"] != account.public_key:
                    raise AccountConflict(f"Account {name} already holds a different keypair")
                return Account.from_dict(name, existing)
            for other, d in data.items():
                if d["publicKey"] == account.public_key:
                    raise AccountConflict(f"publicKey {account.public_key} is already stored as {other}")
            data[name] = {"publicKey": account.public_key, "secretKey": account.secret_key}
            await self._write(data, token)

        log.info("Stored account [%s] publicKey = [%s]", name, account.public_key)
        return Account(name=name, public_key=account.public_key, secret_key=account.secret_key)


class InMemoryRegistry(_MappingRegistry):
    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, dict] = {}

    async def _read(self) -> tuple[dict[str, dict], Any]:
        return {k: dict(v) for k, v in self._data.items()}, None

    async def _write(self, data: dict[str, dict], token: Any) -> None:
        self._data = data


class JsonFileRegistry(_MappingRegistry):
    """Registry persisted as one JSON object, rewritten in full on every mutation.

    Nothing is cached between calls: each operation re-reads the file, so the
    file is the single source of truth for this and any other process. Writes
    go to a temp file in the same directory and are swapped in with
    os.replace(). If the file's (mtime, size) fingerprint changed since our
    read, another process wrote in between and we raise RegistryWriteConflict
    rather than silently discarding its account.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)

    def _fingerprint(self) -> tuple[int, int] | None:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return st.st_mtime_ns, st.st_size

    def _read_sync(self) -> tuple[dict[str, dict], tuple[int, int] | None]:
        fingerprint = self._fingerprint()
        if fingerprint is None:
            return {}, None
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return {}, fingerprint
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise RegistryCorrupt(f"{self.path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise RegistryCorrupt(f"{self.path} must hold a JSON object, got {type(data).__name__}")
        return data, fingerprint

    def _write_sync(self, data: dict[str, dict], expected: tuple[int, int] | None) -> None:
        if self._fingerprint() != expected:
            raise RegistryWriteConflict(f"{self.path} was modified by another writer, retry the operation")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f_out:
                json.dump(data, f_out, indent=4)
                f_out.flush()
                os.fsync(f_out.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _read(self) -> tuple[dict[str, dict], Any]:
        return await asyncio.to_thread(self._read_sync)

    async def _write(self, data: dict[str, dict], token: Any) -> None:
        await asyncio.to_thread(self._write_sync, data, token)


class SQLiteRegistry:
    """Transactional backend: create-if-absent is a single INSERT ... ON CONFLICT."""

    def __init__(self, db_path: str | Path = "registry.db") -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._init_db()

    def _init_db(self) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    name TEXT PRIMARY KEY,
                    public_key TEXT NOT NULL UNIQUE,
                    secret_key TEXT NOT NULL,
                    created_at REAL NOT NULL
                );
                """
            )
            conn.commit()
            log.debug("SQLite registry initialized at %s", self.db_path)
        finally:
            conn.close()

    def _select(self, conn: sqlite3.Connection, name: str) -> Account | None:
        row = conn.execute(
            "SELECT public_key, secret_key FROM accounts WHERE name = ?", (name,)
        ).fetchone()
        if row is None:
            return None
        return Account(name=name, public_key=row[0], secret_key=row[1])

    def _insert_sync(self, account: Account) -> tuple[Account, bool]:
        conn = sqlite3.connect(self.db_path)
        try:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO accounts (name, public_key, secret_key, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(name) DO NOTHING
                    """,
                    (account.name, account.public_key, account.secret_key, time.time()),
                )
            except sqlite3.IntegrityError as e:
                # name is free but public_key is UNIQUE
                raise AccountConflict(f"publicKey {account.public_key} is already stored under another name") from e
            conn.commit()
            inserted = cursor.rowcount == 1
            return self._select(conn, account.name), inserted
        finally:
            conn.close()

    def _get_sync(self, name: str) -> Account | None:
        conn = sqlite3.connect(self.db_path)
        try:
            return self._select(conn, name)
        finally:
            conn.close()

    def _all_sync(self) -> dict[str, Account]:
        conn = sqlite3.connect(self.db_path)
        try:
            rows = conn.execute("SELECT name, public_key, secret_key FROM accounts ORDER BY created_at").fetchall()
            return {name: Account(name=name, public_key=pk, secret_key=sk) for name, pk, sk in rows}
        finally:
            conn.close()

    async def create(self, name: str) -> Account:
        _check_name(name)
        async with self._lock:
            account, inserted = await asyncio.to_thread(self._insert_sync, Account.generate(name))
        if inserted:
            log.info("Created account [%s] publicKey = [%s]", name, account.public_key)
        return account

    async def set(self, name: str, account: Account) -> Account:
        _check_name(name)
        _check_keypair(account)
        candidate = Account(name=name, public_key=account.public_key, secret_key=account.secret_key)
        async with self._lock:
            stored, _ = await asyncio.to_thread(self._insert_sync, candidate)
        if stored.public_key != account.public_key:
            raise AccountConflict(f"Account {name} already holds a different keypair")
        return stored

    async def get(self, name: str) -> Account:
        found = await asyncio.to_thread(self._get_sync, name)
        if found is None:
            raise NotFound(name)
        return found

    async def exists(self, name: str) -> bool:
        return await asyncio.to_thread(self._get_sync, name) is not None

    async def all(self) -> dict[str, Account]:
        return await asyncio.to_thread(self._all_sync)


def open_registry(conf: dict) -> AccountRegistry:
    """Build the registry backend named in the `[registry]` config section."""
    backend = RegistryBackend(conf["registry"]["backend"])
    path = conf["registry"]["path"]
    log.info("Using %s registry at %s", backend, path)
    if backend == RegistryBackend.SQLITE:
        return SQLiteRegistry(path)
    if backend == RegistryBackend.MEMORY:
        return InMemoryRegistry()
    return JsonFileRegistry(path)
