# sentinel/utils/ip_lookup.py
import logging
import time
from typing import Dict, Optional

import requests

from sentinel.core.errors import NetworkUnavailable

log = logging.getLogger(__name__)

DEFAULT_URL = "https://api.ipify.org?format=json"


class PublicIPService:
    """Resolves this device's public IP through an external echo service"""

    def __init__(self, url: str = DEFAULT_URL, timeout: float = 5, cache_ttl: int = 300):
        self.url = url
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        # Format: {'ip': str, 'timestamp': unix_timestamp}
        self._cache: Optional[Dict[str, object]] = None

    def lookup(self) -> str:
        """
        Return the public IP address.
        Raises NetworkUnavailable on timeouts, HTTP errors and malformed replies.
        """
        current_time = time.time()
        if self._cache and current_time - self._cache['timestamp'] < self.cache_ttl:
            log.debug("Using cached public IP")
            return self._cache['ip']

        try:
            response = requests.get(self.url, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            log.warning("Public IP lookup timeout: %s", self.url)
            raise NetworkUnavailable("IP lookup timed out") from e
        except requests.exceptions.RequestException as e:
            log.warning("Public IP lookup request failed: %s", str(e))
            raise NetworkUnavailable(f"IP lookup failed: {e}") from e

        if response.status_code != 200:
            log.warning("Public IP lookup failed: HTTP %s", response.status_code)
            raise NetworkUnavailable(f"IP lookup failed: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkUnavailable("IP lookup returned malformed data") from e
        ip = data.get('ip') if isinstance(data, dict) else None
        if not ip or not isinstance(ip, str):
            raise NetworkUnavailable("IP lookup returned no address")

        self._cache = {'ip': ip, 'timestamp': current_time}
        log.info("Public IP lookup successful")
        return ip

    def clear_cache(self):
        self._cache = None
