"""Provider adapters: Cloudflare (primary, read-only) and ClouDNS (secondary).

Adapters are synchronous `requests` clients. They return raw provider
records; normalization into CanonicalRecord happens in the orchestrator through
each adapter's `normalize`. Every failure is raised as a DNSSyncError
variant so callers never handle `requests` exceptions directly.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List

import requests

from .errors import (
    ConfigurationError,
    MalformedResponseError,
    PermanentProviderError,
    TransientProviderError,
    classify_http_error,
)
from .records import (
    CanonicalRecord,
    ProviderRef,
    normalize_cloudflare,
    normalize_cloudns,
    to_relative_host,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Provider Interfaces
# =============================================================================


class SourceProvider(ABC):
    """Read-only view of the authoritative zone."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @property
    @abstractmethod
    def zone(self) -> str:
        """Return the zone apex name."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the provider."""
        pass

    @abstractmethod
    def fetch_all(self) -> List[Dict[str, Any]]:
        """Return every raw record of the zone."""
        pass

    @abstractmethod
    def normalize(self, raw: Any) -> CanonicalRecord:
        """Convert one raw record into canonical form."""
        pass


class TargetProvider(SourceProvider):
    """Zone that the sync engine writes to."""

    @abstractmethod
    def add(self, record: CanonicalRecord) -> ProviderRef:
        """Create a record and return its provider reference."""
        pass

    @abstractmethod
    def update(self, ref: ProviderRef, record: CanonicalRecord) -> None:
        """Overwrite the record identified by `ref`."""
        pass

    @abstractmethod
    def delete(self, ref: ProviderRef) -> None:
        """Remove the record identified by `ref`."""
        pass


# =============================================================================
# Helpers
# =============================================================================


def _decode_json(response: requests.Response, provider: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponseError(
            f"{provider} returned a non-JSON response: {e}",
            provider=provider,
            payload_type="text",
        ) from e


def _safe_json(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


# =============================================================================
# Cloudflare
# =============================================================================


class CloudflareSource(SourceProvider):
    """Cloudflare v4 API, authenticated with a bearer token."""

    BASE_URL = "https://api.cloudflare.com/client/v4"
    PAGE_SIZE = 5000

    def __init__(
        self,
        api_token: str,
        zone_id: str,
        zone_name: str,
        base_url: str = BASE_URL,
        timeout_seconds: float = 10.0,
    ):
        self._zone_id = zone_id
        self._zone_name = zone_name
        self._url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {api_token}", "Content-Type": "application/json"}
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    @property
    def zone(self) -> str:
        return self._zone_name

    def normalize(self, raw: Any) -> CanonicalRecord:
        return normalize_cloudflare(raw, self._zone_name)

    def test_connection(self) -> bool:
        try:
            response = self._session.get(
                f"{self._url}/zones/{self._zone_id}", timeout=self._timeout
            )
            response.raise_for_status()
            logger.info(f"{self.name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def fetch_all(self) -> List[Dict[str, Any]]:
        url = f"{self._url}/zones/{self._zone_id}/dns_records"
        try:
            response = self._session.get(
                url, params={"per_page": self.PAGE_SIZE}, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(
                f"Failed to get records from {self.name}: {e}", provider="cloudflare"
            ) from e

        if not response.ok:
            errors = _safe_json(response).get("errors") or [{}]
            message = errors[0].get("message") if isinstance(errors[0], dict) else None
            raise classify_http_error(
                "cloudflare",
                response.status_code,
                f"Cloudflare API error: {message or response.reason}",
            )

        data = _decode_json(response, "cloudflare")
        if not isinstance(data, dict) or not isinstance(data.get("result"), list):
            raise MalformedResponseError(
                f"Unexpected response format from {self.name}: expected result list",
                provider="cloudflare",
                payload_type=type(data).__name__,
            )
        if data.get("success") is False:
            raise PermanentProviderError(
                f"Cloudflare API reported failure: {data.get('errors')}",
                provider="cloudflare",
                status=response.status_code,
            )

        records = data["result"]
        logger.info(f"Fetched {len(records)} record(s) from {self.name}")
        return records


# =============================================================================
# ClouDNS
# =============================================================================


class ClouDNSTarget(TargetProvider):
    """ClouDNS HTTP API with auth-id (or sub-auth-id) and password.

    Mutations are POSTed as form-encoded bodies. ClouDNS reports logical
    failures with HTTP 200 and {"status": "Failed", "statusDescription": ...}.
    """

    BASE_URL = "https://api.cloudns.net/dns"
    ROWS_PER_PAGE = 100

    def __init__(
        self,
        auth_id: str,
        auth_password: str,
        domain_name: str,
        use_sub_auth: bool = False,
        base_url: str = BASE_URL,
        timeout_seconds: float = 10.0,
    ):
        self._auth_id = auth_id
        self._auth_password = auth_password
        self._domain_name = domain_name
        self._use_sub_auth = use_sub_auth
        self._url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._local = threading.local()

    @property
    def _session(self) -> requests.Session:
        """Session of the calling thread; batched mutations run on worker threads."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    @property
    def name(self) -> str:
        return "ClouDNS"

    @property
    def zone(self) -> str:
        return self._domain_name

    def normalize(self, raw: Any) -> CanonicalRecord:
        return normalize_cloudns(raw, self._domain_name)

    def _auth_params(self) -> Dict[str, str]:
        key = "sub-auth-id" if self._use_sub_auth else "auth-id"
        return {key: self._auth_id, "auth-password": self._auth_password}

    def _zone_params(self, **extra: str) -> Dict[str, str]:
        params = self._auth_params()
        params["domain-name"] = self._domain_name
        params.update(extra)
        return params

    def _request(self, method: str, endpoint: str, params: Dict[str, str]) -> Any:
        url = f"{self._url}/{endpoint}"
        try:
            if method == "GET":
                response = self._session.get(url, params=params, timeout=self._timeout)
            else:
                response = self._session.post(url, data=params, timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(
                f"{self.name} request to {endpoint} failed: {e}", provider="cloudns"
            ) from e

        if not response.ok:
            description = _safe_json(response).get("statusDescription")
            raise classify_http_error(
                "cloudns",
                response.status_code,
                f"ClouDNS API error: {description or response.reason}",
            )

        data = _decode_json(response, "cloudns")
        if isinstance(data, dict) and data.get("status") == "Failed":
            description = str(data.get("statusDescription") or "unknown error")
            if "authentication" in description.lower():
                raise ConfigurationError(
                    f"ClouDNS rejected credentials: {description}",
                    provider="cloudns",
                    setting="CLOUDNS_AUTH_ID",
                )
            raise PermanentProviderError(
                f"ClouDNS API error: {description}",
                provider="cloudns",
                status=response.status_code,
                provider_message=description,
            )
        return data

    def _mutate(self, endpoint: str, params: Dict[str, str]) -> Dict[str, Any]:
        data = self._request("POST", endpoint, params)
        if not isinstance(data, dict) or data.get("status") != "Success":
            description = data.get("statusDescription") if isinstance(data, dict) else None
            raise PermanentProviderError(
                f"ClouDNS API error: {description or 'unexpected response'}",
                provider="cloudns",
                provider_message=description or "",
            )
        return data

    def _record_params(self, record: CanonicalRecord) -> Dict[str, str]:
        params = {
            "host": to_relative_host(record.name, self._domain_name),
            "record": record.content,
            "ttl": str(record.ttl),
        }
        if record.type in ("MX", "SRV"):
            params["priority"] = str(record.get("priority"))
        if record.type == "SRV":
            params["weight"] = str(record.get("weight"))
            params["port"] = str(record.get("port"))
        elif record.type == "CAA":
            params["caa_flag"] = str(record.get("flags"))
            params["caa_type"] = str(record.get("tag"))
            params["caa_value"] = record.content
        elif record.type == "NAPTR":
            params["order"] = str(record.get("order"))
            params["pref"] = str(record.get("preference"))
            params["flag"] = record.get("flags", "")
            params["params"] = record.get("service", "")
            params["regexp"] = record.get("regexp", "")
            params["replace"] = record.content
        return params

    def test_connection(self) -> bool:
        try:
            self._request("GET", "get-available-ttl.json", self._auth_params())
            logger.info(f"{self.name} connection successful")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def _fetch_page(self, page: int) -> List[Dict[str, Any]]:
        data = self._request(
            "GET",
            "records.json",
            self._zone_params(**{"page": str(page), "rows-per-page": str(self.ROWS_PER_PAGE)}),
        )
        # Records come back keyed by id; an empty page is an empty list.
        if isinstance(data, dict):
            return list(data.values())
        if isinstance(data, list):
            return data
        raise MalformedResponseError(
            f"Unexpected response format from {self.name}: {type(data).__name__}",
            provider="cloudns",
            payload_type=type(data).__name__,
        )

    def fetch_all(self) -> List[Dict[str, Any]]:
        """Every record of the zone, reading pages until a short one comes back."""
        records: List[Dict[str, Any]] = []
        seen_ids = set()
        page = 1
        while True:
            rows = self._fetch_page(page)
            page_ids = {str(row.get("id")) for row in rows if isinstance(row, dict)}
            if page_ids and page_ids <= seen_ids:
                logger.warning(f"{self.name} returned already listed records for page {page}; stopping")
                break
            seen_ids.update(page_ids)
            records.extend(rows)
            if len(rows) < self.ROWS_PER_PAGE:
                break
            page += 1
        logger.info(f"Fetched {len(records)} record(s) from {self.name}")
        return records

    def add(self, record: CanonicalRecord) -> ProviderRef:
        params = self._zone_params(**{"record-type": record.type}, **self._record_params(record))
        data = self._mutate("add-record.json", params)
        payload = data.get("data") if isinstance(data.get("data"), dict) else {}
        logger.info(f"Added {self.name} record: {record.identity} -> {record.content}")
        return ProviderRef(id=str(payload.get("id", "")), raw=data)

    def update(self, ref: ProviderRef, record: CanonicalRecord) -> None:
        params = self._zone_params(**{"record-id": ref.id}, **self._record_params(record))
        self._mutate("modify-record.json", params)
        logger.info(f"Updated {self.name} record {ref.id}: {record.identity} -> {record.content}")

    def delete(self, ref: ProviderRef) -> None:
        self._mutate("delete-record.json", self._zone_params(**{"record-id": ref.id}))
        logger.info(f"Deleted {self.name} record {ref.id}")
