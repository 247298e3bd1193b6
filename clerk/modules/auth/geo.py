"""
IP geolocation for login anomaly detection.

Purpose
-------
Resolve an IP address to a coarse fingerprint (country, region) plus the
mobile / proxy / hosting flags, using the ip-api.com JSON endpoint.

Behavior
--------
- Best effort: any transport error, non-200 response, malformed payload or
  ``status != "success"`` yields ``GeoInfo.unknown()``. An unknown result
  never signals an anomaly.
- Private, loopback, link-local and otherwise non-global addresses are not
  sent to the service.

Configuration Keys
------------------
- auth.geo.enabled           : bool  (default True)
- auth.geo.url               : str   (default ip-api.com template)
- auth.geo.timeout_seconds   : float (default 3.0)
"""

from __future__ import annotations

import ipaddress
import time
from typing import Any, Optional, Protocol

import httpx

from clerk.core.logging.logger import get_logger
from clerk.modules.accounts.types import GeoInfo
from clerk.modules.shared.constants import UNKNOWN_GEO

logger = get_logger(__name__)

DEFAULT_GEO_URL = (
    "http://ip-api.com/json/{ip}?fields=status,country,regionName,mobile,proxy,hosting"
)


class GeoLookup(Protocol):
    async def lookup(self, ip: str) -> GeoInfo: ...


def is_public_ip(ip: str) -> bool:
    try:
        return ipaddress.ip_address(ip.strip()).is_global
    except ValueError:
        return False


class IpApiGeoLookup:
    """
    ``GeoLookup`` backed by ip-api.com over a shared ``httpx.AsyncClient``.

    Call ``close()`` at shutdown; the client is created lazily on first use.
    """

    def __init__(
        self,
        url_template: str = DEFAULT_GEO_URL,
        timeout_seconds: float = 3.0,
        enabled: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url_template = url_template
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled
        self._client = client

    @classmethod
    def from_config(cls, config_manager: Any) -> "IpApiGeoLookup":
        return cls(
            url_template=config_manager.get("auth.geo.url", DEFAULT_GEO_URL),
            timeout_seconds=float(config_manager.get("auth.geo.timeout_seconds", 3.0)),
            enabled=bool(config_manager.get("auth.geo.enabled", True)),
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def lookup(self, ip: str) -> GeoInfo:
        if not self.enabled or not is_public_ip(ip):
            return GeoInfo.unknown()

        start = time.perf_counter()
        try:
            response = await self._get_client().get(self.url_template.format(ip=ip.strip()))
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Geo lookup failed",
                extra={
                    "ip": ip,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            return GeoInfo.unknown()

        return parse_geo_payload(payload)


def parse_geo_payload(payload: Any) -> GeoInfo:
    if not isinstance(payload, dict) or payload.get("status") != "success":
        return GeoInfo.unknown()
    return GeoInfo(
        country=str(payload.get("country") or UNKNOWN_GEO),
        region=str(payload.get("regionName") or UNKNOWN_GEO),
        is_mobile=bool(payload.get("mobile", False)),
        is_proxy=bool(payload.get("proxy", False)),
        is_hosting=bool(payload.get("hosting", False)),
    )
