"""
Shared fixtures for the test suite
"""

import pytest
import pytest_asyncio

from sentinel.core.config import Settings
from sentinel.db.accounts import CredentialStore
from sentinel.db.store import KeyValueStore
from sentinel.models.models import (DeviceFingerprint, ExtractedData, FraudCheck,
                                    RiskLevel, VerificationResult)
from sentinel.services.session_service import SessionManager

CHROME_WINDOWS_UA = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                     "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36")


@pytest_asyncio.fixture
async def kv():
    """In-memory key/value store"""
    store = KeyValueStore(":memory:")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def accounts(kv):
    return CredentialStore(kv)


@pytest.fixture
def sessions(kv, accounts):
    return SessionManager(kv, accounts)


@pytest.fixture
def make_result():
    """Factory for VerificationResult objects"""
    counter = {"n": 0}

    def _make(risk_level=RiskLevel.LOW, risk_score=10, face_match_score=92):
        counter["n"] += 1
        return VerificationResult(
            id=f"result-{counter['n']}",
            timestamp=1_700_000_000_000 + counter["n"],
            risk_level=risk_level,
            risk_score=risk_score,
            face_match_score=face_match_score,
            extracted_data=ExtractedData(
                full_name="Alice Example",
                document_number="P1234567",
                document_type="Passport",
                date_of_birth="1990-01-01",
                expiry_date="2030-01-01",
                issuing_country="Utopia",
            ),
            fraud_checks=(
                FraudCheck("Document Type Validation", True, "Passport layout"),
                FraudCheck("Structure & Layout Check", True, "Fields aligned"),
                FraudCheck("Hologram/Emblem Detection", True, "Emblem present"),
            ),
            reasoning="Document consistent; faces match.",
        )

    return _make


@pytest.fixture
def make_fingerprint():
    """Factory for DeviceFingerprint objects; `t` is seconds"""
    def _make(ip="1.2.3.4", t=0, os="Windows", browser="Chrome", user_agent=CHROME_WINDOWS_UA):
        return DeviceFingerprint(ip=ip, os=os, browser=browser, user_agent=user_agent, last_seen=t * 1000)

    return _make


@pytest.fixture
def test_settings(tmp_path):
    """Settings for an isolated app instance"""
    return Settings(
        db_path=str(tmp_path / "sentinel-test.db"),
        analysis_api_key=None,
        analysis_model="test-model",
        analysis_timeout_sec=5,
        assistant_model="test-model",
        ip_lookup_url="http://ip.invalid/",
        ip_lookup_timeout_sec=1,
        ip_lookup_cache_ttl=0,
        scan_delay_ms=0,
        device_history_cap=50,
        device_dedup_window_sec=3600,
        max_verification_results=None,
        digest_scheme="legacy",
        log_level="DEBUG",
    )
