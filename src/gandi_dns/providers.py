"""Clients for the DNS provider (Gandi LiveDNS) and the resource registry (Protos)."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import requests

from gandi_dns.records import APEX_HOST, CanonicalRecord, DesiredRecord, Resource

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10

# =============================================================================
# Errors
# =============================================================================


class ErrorKind(Enum):
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    OTHER = "other"


class ProviderError(Exception):
    """Error returned by the DNS provider."""

    kind = ErrorKind.OTHER

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(ProviderError):
    kind = ErrorKind.NOT_FOUND


class TransportError(ProviderError):
    kind = ErrorKind.TRANSPORT


class RegistryError(Exception):
    """Error returned by the resource registry."""


class AlreadyRegisteredError(RegistryError):
    pass


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or response.reason or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        for key in ("message", "error", "cause"):
            if data.get(key):
                return str(data[key])
    return json.dumps(data)


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def get_domain(self, domain: str) -> Dict[str, Any]:
        """Check that the domain is managed by this provider."""
        pass

    @abstractmethod
    def get_record(self, domain: str, name: str, record_type: str) -> CanonicalRecord:
        """Get one record, raising NotFoundError if it does not exist."""
        pass

    @abstractmethod
    def list_records(self, domain: str) -> List[CanonicalRecord]:
        """Get all records of a domain."""
        pass

    @abstractmethod
    def create_record(
        self, domain: str, name: str, record_type: str, ttl: int, values: Sequence[str]
    ) -> None:
        pass

    @abstractmethod
    def change_records(self, domain: str, records: Sequence[CanonicalRecord]) -> None:
        """Replace each record identified by name and type."""
        pass

    @abstractmethod
    def delete_record(self, domain: str, name: str, record_type: str) -> None:
        pass


class GandiLiveDNSProvider(DNSProvider):
    """Gandi LiveDNS v5 provider implementation."""

    def __init__(
        self,
        api_key: str,
        url: str = "https://api.gandi.net/v5/livedns",
        timeout_seconds: float = DEFAULT_TIMEOUT,
    ):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Apikey {api_key}", "Accept": "application/json"}
        )

    @property
    def name(self) -> str:
        return "Gandi LiveDNS"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self._url}/{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(_error_message(response), status_code=404)
        if response.status_code >= 400:
            raise ProviderError(
                f"{method} {url} returned {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        return response

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Invalid response from {self.name}: {e}") from e

    @staticmethod
    def _rrset_name(domain: str, name: str) -> str:
        return APEX_HOST if name.lower() == domain.lower() else name

    @staticmethod
    def _record_from_rrset(domain: str, data: Dict[str, Any]) -> CanonicalRecord:
        name = str(data.get("rrset_name") or "")
        if name == APEX_HOST:
            name = domain
        return CanonicalRecord(
            name=name,
            type=str(data.get("rrset_type") or ""),
            ttl=int(data.get("rrset_ttl") or 0),
            values=tuple(str(v) for v in data.get("rrset_values") or []),
        )

    def get_domain(self, domain: str) -> Dict[str, Any]:
        return self._json(self._request("GET", f"domains/{domain}"))

    def get_record(self, domain: str, name: str, record_type: str) -> CanonicalRecord:
        rrset_name = self._rrset_name(domain, name)
        response = self._request("GET", f"domains/{domain}/records/{rrset_name}/{record_type}")
        data = self._json(response)
        if not isinstance(data, dict):
            raise ProviderError(f"Unexpected record format from {self.name}: {data!r}")
        return self._record_from_rrset(domain, data)

    def list_records(self, domain: str) -> List[CanonicalRecord]:
        data = self._json(self._request("GET", f"domains/{domain}/records"))
        if not isinstance(data, list):
            raise ProviderError(
                f"Unexpected response format from {self.name}: "
                f"expected list, got {type(data).__name__}"
            )

        records = []
        for item in data:
            if not isinstance(item, dict) or not item.get("rrset_name"):
                logger.warning(f"Skipping malformed record: {item}")
                continue
            records.append(self._record_from_rrset(domain, item))
        return records

    def create_record(
        self, domain: str, name: str, record_type: str, ttl: int, values: Sequence[str]
    ) -> None:
        data = {
            "rrset_name": self._rrset_name(domain, name),
            "rrset_type": record_type,
            "rrset_ttl": ttl,
            "rrset_values": list(values),
        }
        self._request("POST", f"domains/{domain}/records", json=data)

    def change_records(self, domain: str, records: Sequence[CanonicalRecord]) -> None:
        for record in records:
            rrset_name = self._rrset_name(domain, record.name)
            data = {"rrset_ttl": record.ttl, "rrset_values": list(record.values)}
            self._request("PUT", f"domains/{domain}/records/{rrset_name}/{record.type}", json=data)

    def delete_record(self, domain: str, name: str, record_type: str) -> None:
        rrset_name = self._rrset_name(domain, name)
        self._request("DELETE", f"domains/{domain}/records/{rrset_name}/{record_type}")


# =============================================================================
# Resource Registry Interface and Implementations
# =============================================================================


def resource_from_json(data: Dict[str, Any]) -> Resource:
    """Build a Resource from its registry JSON representation.

    DNS resource values become DesiredRecords carrying the resource id.
    """
    rsc_id = str(data.get("id") or "")
    rsc_type = str(data.get("type") or "")
    raw_value = data.get("value")
    value: Any = raw_value

    if rsc_type.lower() == "dns" and isinstance(raw_value, dict):
        try:
            value = DesiredRecord(
                id=rsc_id,
                host=str(raw_value.get("host") or ""),
                type=str(raw_value.get("type") or ""),
                ttl=int(raw_value.get("ttl") or 0),
                value=str(raw_value.get("value") or ""),
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Resource {rsc_id} has a malformed DNS value: {e}")

    return Resource(id=rsc_id, type=rsc_type, value=value, status=str(data.get("status") or ""))


class ResourceRegistry(ABC):
    """Abstract base class for the registry that owns the desired records."""

    @abstractmethod
    def list_resources(self) -> List[Resource]:
        pass

    @abstractmethod
    def set_resource_status(self, resource_id: str, status: str) -> None:
        pass

    @abstractmethod
    def register_provider(self, name: str) -> None:
        pass

    @abstractmethod
    def deregister_provider(self, name: str) -> None:
        pass

    @abstractmethod
    def get_domain(self) -> str:
        pass


class ProtosRegistry(ResourceRegistry):
    """Protos internal API client."""

    def __init__(
        self,
        url: str = "http://protos:8080/api/v1/i",
        app_id: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT,
    ):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"Appid": app_id})

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self._url}/{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise RegistryError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            message = _error_message(response)
            if "already registered" in message:
                raise AlreadyRegisteredError(message.rstrip("\n"))
            raise RegistryError(f"{method} {url} returned {response.status_code}: {message}")
        return response

    def list_resources(self) -> List[Resource]:
        try:
            data = self._request("GET", "resource/provider").json()
        except ValueError as e:
            raise RegistryError(f"Invalid resource listing: {e}") from e

        # Protos returns resources keyed by id
        if isinstance(data, dict):
            items = list(data.values())
        elif isinstance(data, list):
            items = data
        else:
            raise RegistryError(f"Unexpected resource listing type: {type(data).__name__}")

        resources = []
        for item in items:
            if not isinstance(item, dict):
                logger.debug(f"Skipping non-dict resource entry: {item}")
                continue
            resources.append(resource_from_json(item))
        return resources

    def set_resource_status(self, resource_id: str, status: str) -> None:
        self._request("POST", f"resource/{resource_id}", json={"status": status})

    def register_provider(self, name: str) -> None:
        self._request("POST", "provider", json={"type": name})

    def deregister_provider(self, name: str) -> None:
        self._request("DELETE", "provider", json={"type": name})

    def get_domain(self) -> str:
        try:
            data = self._request("GET", "info/domain").json()
        except ValueError as e:
            raise RegistryError(f"Invalid domain response: {e}") from e
        if isinstance(data, dict):
            return str(data.get("domain") or "")
        return ""
