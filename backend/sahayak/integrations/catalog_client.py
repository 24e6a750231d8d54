"""Client for the service catalog, which owns provider offerings and prices."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Dict, Optional, Protocol, Tuple

import httpx

from ..core.exceptions import GatewayCommunicationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceOffering:
    """What a provider charges for a service, as published by the catalog."""

    service_id: str
    provider_id: str
    name: str
    base_price: int
    duration_minutes: int
    currency: str = "INR"
    is_active: bool = True


class ServiceCatalog(Protocol):
    def get_offering(self, provider_id: str, service_id: str) -> Optional[ServiceOffering]:
        """Return the offering, or None if the provider does not offer the service."""
        ...


class HttpServiceCatalog:
    """Reads offerings from the catalog service's REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def get_offering(self, provider_id: str, service_id: str) -> Optional[ServiceOffering]:
        url = f"{self._base_url}/providers/{provider_id}/services/{service_id}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(url, headers={"Accept": "application/json"})
        except httpx.RequestError as exc:
            logger.error("Catalog request failed for %s: %s", url, str(exc))
            raise GatewayCommunicationError("Service catalog is unreachable") from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.error("Catalog error %s for %s", response.status_code, url)
            raise GatewayCommunicationError(
                f"Service catalog responded with status {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )
        try:
            payload = response.json()
            return ServiceOffering(
                service_id=str(payload.get("service_id") or service_id),
                provider_id=str(payload.get("provider_id") or provider_id),
                name=str(payload.get("name") or ""),
                base_price=int(payload["base_price"]),
                duration_minutes=int(payload["duration_minutes"]),
                currency=str(payload.get("currency") or "INR"),
                is_active=bool(payload.get("is_active", True)),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.error("Malformed catalog payload for %s: %s", url, response.text[:500])
            raise GatewayCommunicationError(
                "Service catalog returned a malformed offering", retryable=False
            ) from exc


class InMemoryServiceCatalog:
    """Static catalog for local development and tests."""

    def __init__(self, offerings: Optional[Dict[Tuple[str, str], ServiceOffering]] = None) -> None:
        self._offerings: Dict[Tuple[str, str], ServiceOffering] = dict(offerings or {})

    def add(self, offering: ServiceOffering) -> None:
        self._offerings[(offering.provider_id, offering.service_id)] = offering

    def get_offering(self, provider_id: str, service_id: str) -> Optional[ServiceOffering]:
        return self._offerings.get((provider_id, service_id))
