# sentinel/services/device_service.py
"""
Device intelligence: classifies the user agent, resolves the public IP and
records the resulting fingerprint against the signed-in account
"""
import asyncio
import logging
from typing import List, Optional, Tuple

from sentinel.core.errors import NetworkUnavailable
from sentinel.db.accounts import CredentialStore
from sentinel.models.models import DeviceFingerprint, Session
from sentinel.services.session_service import SessionManager
from sentinel.utils.helpers import now_ms
from sentinel.utils.ip_lookup import PublicIPService

log = logging.getLogger(__name__)

IP_SENTINEL = "Hidden / Protected"
UNKNOWN = "Unknown"

# First match wins. iOS user agents contain "like Mac OS X" and Android ones
# contain "Linux", so the more specific markers come first.
OS_MARKERS: List[Tuple[str, str]] = [
    ("like Mac", "iOS"),
    ("Android", "Android"),
    ("Linux", "Linux"),
    ("Mac", "macOS"),
    ("Win", "Windows"),
]

# Edge and Chrome both advertise "Safari"; Edge also advertises "Chrome".
BROWSER_MARKERS: List[Tuple[str, str]] = [
    ("Edg", "Edge"),
    ("Chrome", "Chrome"),
    ("Firefox", "Firefox"),
    ("Safari", "Safari"),
]


def classify_os(user_agent: str) -> str:
    for marker, family in OS_MARKERS:
        if marker in user_agent:
            return family
    return UNKNOWN


def classify_browser(user_agent: str) -> str:
    for marker, family in BROWSER_MARKERS:
        if marker not in user_agent:
            continue
        if family == "Safari" and "Chrome" in user_agent:
            continue
        return family
    return UNKNOWN


class DeviceCollector:
    """Builds one DeviceFingerprint per session bootstrap / account change"""

    def __init__(self, ip_service: PublicIPService, accounts: CredentialStore, sessions: SessionManager):
        self.ip_service = ip_service
        self.accounts = accounts
        self.sessions = sessions
        self.last_fingerprint: Optional[DeviceFingerprint] = None

    async def resolve_ip(self) -> str:
        try:
            return await asyncio.to_thread(self.ip_service.lookup)
        except NetworkUnavailable as e:
            log.warning("Public IP unavailable, using sentinel value: %s", e)
            return IP_SENTINEL

    async def collect(self, user_agent: str) -> DeviceFingerprint:
        user_agent = user_agent or ""
        fingerprint = DeviceFingerprint(
            ip=await self.resolve_ip(),
            os=classify_os(user_agent),
            browser=classify_browser(user_agent),
            user_agent=user_agent,
            last_seen=now_ms(),
        )
        self.last_fingerprint = fingerprint
        return fingerprint

    def forget(self):
        """Drop the last fingerprint and the cached public IP (on logout)."""
        self.last_fingerprint = None
        self.ip_service.clear_cache()

    async def collect_and_record(self, user_agent: str,
                                 session: Optional[Session]) -> Tuple[DeviceFingerprint, Optional[Session]]:
        """Collect a fingerprint and, with an active session, merge it into the account."""
        fingerprint = await self.collect(user_agent)
        if session is None:
            return fingerprint, None
        await self.accounts.merge_device_fingerprint(session.id, fingerprint)
        return fingerprint, await self.sessions.refresh(session.id)
