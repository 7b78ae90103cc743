"""
Session Service - owns the "currently authenticated account" projection
"""

import json
import logging
from typing import Optional

from sentinel.db.accounts import CredentialStore, normalize_record
from sentinel.db.store import KeyValueStore
from sentinel.models.models import Session

log = logging.getLogger(__name__)

SESSION_KEY = "sentinel_session"


class SessionManager:
    """
    Keeps the single session projection in memory and in the key/value store.

    Every mutation of the session's account goes through `refresh`, so the
    projection handed back to callers is never older than the account record.
    """

    def __init__(self, kv: KeyValueStore, accounts: CredentialStore):
        self.kv = kv
        self.accounts = accounts
        self._current: Optional[Session] = None

    @property
    def current(self) -> Optional[Session]:
        return self._current

    async def bootstrap(self) -> Optional[Session]:
        """
        Load the persisted session and reconcile it with its account record.

        A corrupt record is discarded, a session whose account is gone is ended,
        and a projection older than the account (e.g. the process stopped
        between an account write and the session write) is replaced.
        """
        raw = await self.kv.get_raw(SESSION_KEY)
        if raw is None:
            self._current = None
            return None
        try:
            session = Session.from_dict(normalize_record(json.loads(raw)))
        except (ValueError, KeyError, TypeError) as e:
            log.warning("Discarding corrupt session record: %s", e)
            await self.kv.delete(SESSION_KEY)
            self._current = None
            return None
        self._current = session
        session = await self.refresh(session.id)
        if session:
            log.info("Restored session for account %s", session.id)
        return session

    async def login(self, account: Session) -> Session:
        self._current = account
        await self.kv.set_json(SESSION_KEY, account.to_dict())
        log.info("Session started for account %s", account.id)
        return account

    async def logout(self):
        # no residual PII on shared devices
        if self._current:
            log.info("Session ended for account %s", self._current.id)
        self._current = None
        await self.kv.delete(SESSION_KEY)

    async def refresh(self, account_id: str) -> Optional[Session]:
        """Overwrite the projection from the account record when it is the session's account."""
        if self._current is None or self._current.id != account_id:
            return self._current
        fresh = await self.accounts.get_account(account_id)
        if fresh is None:
            log.warning("Session account %s no longer exists; ending session", account_id)
            await self.logout()
            return None
        self._current = fresh
        await self.kv.set_json(SESSION_KEY, fresh.to_dict())
        return fresh
