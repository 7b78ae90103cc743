"""
Device intelligence tests: user-agent classification, IP lookup fallback and
write-through to the account
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from sentinel.core.errors import NetworkUnavailable
from sentinel.services.device_service import (IP_SENTINEL, DeviceCollector, classify_browser,
                                              classify_os)
from sentinel.utils.ip_lookup import PublicIPService

UA = {
    "chrome_windows": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "edge_windows": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.2478.51",
    "safari_mac": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "safari_ios": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1",
    "chrome_android": "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36",
    "firefox_linux": "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
}


class StubIPService:
    def __init__(self, ip="203.0.113.7", error=None):
        self.ip = ip
        self.error = error
        self.calls = 0
        self.cache_cleared = 0

    def lookup(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.ip

    def clear_cache(self):
        self.cache_cleared += 1


class TestClassification:
    @pytest.mark.parametrize("ua,os_family,browser", [
        (UA["chrome_windows"], "Windows", "Chrome"),
        (UA["edge_windows"], "Windows", "Edge"),
        (UA["safari_mac"], "macOS", "Safari"),
        (UA["safari_ios"], "iOS", "Safari"),
        (UA["chrome_android"], "Android", "Chrome"),
        (UA["firefox_linux"], "Linux", "Firefox"),
        ("", "Unknown", "Unknown"),
        ("curl/8.4.0", "Unknown", "Unknown"),
    ])
    def test_families(self, ua, os_family, browser):
        assert classify_os(ua) == os_family
        assert classify_browser(ua) == browser

    def test_chrome_is_never_safari(self):
        assert classify_browser(UA["chrome_windows"]) != "Safari"


class TestPublicIPService:
    def test_success_and_cache(self):
        svc = PublicIPService("http://ip.test/", cache_ttl=60)
        response = MagicMock(status_code=200)
        response.json.return_value = {"ip": "198.51.100.1"}
        with patch("sentinel.utils.ip_lookup.requests.get", return_value=response) as get:
            assert svc.lookup() == "198.51.100.1"
            assert svc.lookup() == "198.51.100.1"
        assert get.call_count == 1

    def test_clear_cache_forces_new_lookup(self):
        svc = PublicIPService("http://ip.test/", cache_ttl=60)
        response = MagicMock(status_code=200)
        response.json.return_value = {"ip": "198.51.100.1"}
        with patch("sentinel.utils.ip_lookup.requests.get", return_value=response) as get:
            svc.lookup()
            svc.clear_cache()
            svc.lookup()
        assert get.call_count == 2

    def test_transport_error(self):
        svc = PublicIPService("http://ip.test/")
        with patch("sentinel.utils.ip_lookup.requests.get",
                   side_effect=requests.exceptions.ConnectionError("down")):
            with pytest.raises(NetworkUnavailable):
                svc.lookup()

    def test_http_error(self):
        svc = PublicIPService("http://ip.test/")
        with patch("sentinel.utils.ip_lookup.requests.get", return_value=MagicMock(status_code=502)):
            with pytest.raises(NetworkUnavailable):
                svc.lookup()

    def test_malformed_body(self):
        svc = PublicIPService("http://ip.test/")
        response = MagicMock(status_code=200)
        response.json.side_effect = ValueError("no json")
        with patch("sentinel.utils.ip_lookup.requests.get", return_value=response):
            with pytest.raises(NetworkUnavailable):
                svc.lookup()


class TestCollector:
    async def test_collect_without_session(self, accounts, sessions):
        collector = DeviceCollector(StubIPService(), accounts, sessions)
        fp, session = await collector.collect_and_record(UA["firefox_linux"], None)
        assert session is None
        assert (fp.ip, fp.os, fp.browser) == ("203.0.113.7", "Linux", "Firefox")
        assert fp.user_agent == UA["firefox_linux"]
        assert collector.last_fingerprint == fp

    async def test_network_failure_uses_sentinel(self, accounts, sessions):
        collector = DeviceCollector(StubIPService(error=NetworkUnavailable()), accounts, sessions)
        fp = await collector.collect(UA["chrome_windows"])
        assert fp.ip == IP_SENTINEL

    async def test_records_and_refreshes_session(self, accounts, sessions):
        acct = await accounts.register("Alice", "alice@domain.example", "secret1")
        session = await sessions.login(acct)
        collector = DeviceCollector(StubIPService(), accounts, sessions)

        fp, session = await collector.collect_and_record(UA["chrome_windows"], session)
        assert session.device_history == [fp]
        assert session.last_known_device == fp
        assert sessions.current == session

        # same IP straight away: deduplicated
        _, session = await collector.collect_and_record(UA["chrome_windows"], session)
        assert session.device_history == [fp]

    async def test_forget_drops_fingerprint_and_cached_ip(self, accounts, sessions):
        ip_service = StubIPService()
        collector = DeviceCollector(ip_service, accounts, sessions)
        await collector.collect(UA["chrome_windows"])
        collector.forget()
        assert collector.last_fingerprint is None
        assert ip_service.cache_cleared == 1
