# sentinel/db/accounts.py
from __future__ import annotations
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sentinel.core.errors import DuplicateAccount, InvalidCredentials, StorageCorrupt
from sentinel.db.store import KeyValueStore
from sentinel.models.models import (Account, DeviceFingerprint, RiskLevel, Session,
                                    VerificationResult)
from sentinel.utils.helpers import make_digest, new_id, now_ms, verify_digest

log = logging.getLogger(__name__)

USERS_KEY = "sentinel_users"
SCHEMA_VERSION = 2

DEVICE_HISTORY_CAP = 50
DEDUP_WINDOW_MS = 60 * 60 * 1000


def normalize_record(record: Any) -> Dict[str, Any]:
    """
    Bring an older-shaped account/session record up to the current shape.

    Version 1 records may lack the history lists, the latest result and the
    device fields; they get empty defaults here so that readers never need to
    null-check.
    """
    if not isinstance(record, dict):
        raise TypeError("account record must be an object")
    out = dict(record)
    if out.get("history") is None:
        out["history"] = []
    if out.get("deviceHistory") is None:
        out["deviceHistory"] = []
    out.setdefault("kycResult", None)
    out.setdefault("lastKnownDevice", None)
    out.setdefault("isVerified", False)
    out.setdefault("accountCreated", 0)
    return out


def merge_device_history(history: List[DeviceFingerprint],
                         fingerprint: DeviceFingerprint,
                         window_ms: int = DEDUP_WINDOW_MS,
                         cap: int = DEVICE_HISTORY_CAP) -> Tuple[List[DeviceFingerprint], bool]:
    """
    Apply the dedup/retention policy to a newest-first device history.

    A new entry is recorded when the history is empty, the newest entry has a
    different IP, or the newest entry is older than `window_ms` relative to the
    incoming observation. Returns (new_history, appended).
    """
    newest = history[0] if history else None
    if newest is None or newest.ip != fingerprint.ip or (fingerprint.last_seen - newest.last_seen) > window_ms:
        return ([fingerprint] + list(history))[:cap], True
    return list(history), False


class CredentialStore:
    """Sole authority for durable account records"""

    def __init__(self, kv: KeyValueStore, digest_scheme: str = "legacy",
                 device_history_cap: int = DEVICE_HISTORY_CAP,
                 dedup_window_ms: int = DEDUP_WINDOW_MS,
                 max_verification_results: Optional[int] = None):
        self.kv = kv
        self.digest_scheme = digest_scheme
        self.device_history_cap = device_history_cap
        self.dedup_window_ms = dedup_window_ms
        self.max_verification_results = max_verification_results
        # whole-table read/modify/write must not interleave
        self._table_lock = asyncio.Lock()

    # --- table I/O ---------------------------------------------------------

    async def _load_table(self) -> List[Account]:
        raw = await self.kv.get_raw(USERS_KEY)
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageCorrupt(f"accounts table is not valid JSON: {e}") from e

        if isinstance(data, list):
            log.info("Migrating version 1 accounts table (%d records)", len(data))
            records = data
        elif isinstance(data, dict) and isinstance(data.get("accounts"), list):
            version = data.get("version")
            if not isinstance(version, int) or version > SCHEMA_VERSION:
                raise StorageCorrupt(f"unsupported accounts table version: {version!r}")
            records = data["accounts"]
        else:
            raise StorageCorrupt("accounts table has an unknown layout")

        try:
            return [Account.from_dict(normalize_record(r)) for r in records]
        except (KeyError, TypeError, ValueError) as e:
            raise StorageCorrupt(f"accounts table holds a malformed record: {e}") from e

    async def _save_table(self, accounts: List[Account]):
        await self.kv.set_json(USERS_KEY, {
            "version": SCHEMA_VERSION,
            "accounts": [a.to_dict() for a in accounts],
        })

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[List[Account]]:
        async with self._table_lock:
            accounts = await self._load_table()
            yield accounts
            await self._save_table(accounts)

    @staticmethod
    def _find(accounts: List[Account], account_id: str) -> Optional[Account]:
        return next((a for a in accounts if a.id == account_id), None)

    # --- public API --------------------------------------------------------

    async def register(self, name: str, email: str, password: str) -> Session:
        """Create an account; never starts a session."""
        async with self._transaction() as accounts:
            if any(a.email == email for a in accounts):
                raise DuplicateAccount()
            account = Account(
                id=new_id(),
                name=name,
                email=email,
                password=make_digest(password, self.digest_scheme),
                account_created=now_ms(),
            )
            accounts.append(account)
        log.info("Registered account %s", account.id)
        return account.projection()

    async def authenticate(self, email: str, password: str) -> Session:
        async with self._table_lock:
            accounts = await self._load_table()
        for account in accounts:
            if account.email == email and verify_digest(password, account.password):
                log.info("Authenticated account %s", account.id)
                return account.projection()
        log.info("Authentication failed")
        raise InvalidCredentials()

    async def get_account(self, account_id: str) -> Optional[Session]:
        async with self._table_lock:
            accounts = await self._load_table()
        account = self._find(accounts, account_id)
        return account.projection() if account else None

    async def append_verification_result(self, account_id: str, result: VerificationResult) -> Optional[Session]:
        """Record a result as newest history entry; the verified flag only ever turns on."""
        async with self._transaction() as accounts:
            account = self._find(accounts, account_id)
            if account is None:
                log.warning("Verification result for unknown account %s ignored", account_id)
                return None
            history = [result] + account.history
            if self.max_verification_results:
                history = history[:self.max_verification_results]
            account.history = history
            account.kyc_result = result
            account.is_verified = account.is_verified or result.risk_level != RiskLevel.HIGH
        log.info("Account %s: stored result %s (risk=%s, verified=%s)",
                 account_id, result.id, result.risk_level.value, account.is_verified)
        return account.projection()

    async def merge_device_fingerprint(self, account_id: str, fingerprint: DeviceFingerprint) -> Optional[Session]:
        async with self._transaction() as accounts:
            account = self._find(accounts, account_id)
            if account is None:
                log.warning("Device fingerprint for unknown account %s ignored", account_id)
                return None
            history, appended = merge_device_history(
                account.device_history, fingerprint, self.dedup_window_ms, self.device_history_cap)
            if appended:
                account.device_history = history
                account.last_known_device = fingerprint
        log.debug("Account %s: device %s (%s/%s) %s", account_id, fingerprint.ip, fingerprint.os,
                  fingerprint.browser, "recorded" if appended else "deduplicated")
        return account.projection()
