"""
HTTP client for the upstream ReportMate API (FastAPI / Azure Functions).
"""
import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import requests

from config.settings import Settings
from reportmate.errors import ConfigurationError, UpstreamDetailError, UpstreamListError

logger = logging.getLogger("upstream")

DEVICES_PATH = "/api/devices"
DEVICE_DETAIL_PATH = "/api/device/{entity_id}"
LIST_TIMEOUT = 30


def unwrap_list(data: Any, keys: Sequence[str] = ("devices",)) -> List[Dict[str, Any]]:
    """
    Accept both a bare array and an object wrapping the array under one of ``keys``.

    Raises:
        ValueError: Neither shape matched
    """
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return value
    raise ValueError(f"expected a list or an object with one of {list(keys)}")


def unwrap_document(data: Any) -> Any:
    """Detail responses come as ``{"device": {...}}`` or as the bare document."""
    if isinstance(data, dict) and isinstance(data.get("device"), dict):
        return data["device"]
    return data


class UpstreamClient:
    """
    Thin wrapper over a shared requests.Session.

    The base URL is checked on use, not at construction, so an application
    without API_BASE_URL still starts and reports the problem per request.
    """

    def __init__(
        self,
        base_url: Optional[str],
        internal_secret: Optional[str] = None,
        passphrase: Optional[str] = None,
        user_agent: str = "ReportMate-Frontend/1.0",
        session: Optional[requests.Session] = None,
    ):
        self._base_url = base_url.rstrip("/") if base_url else None
        self._internal_secret = internal_secret
        self._passphrase = passphrase
        self._user_agent = user_agent
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> "UpstreamClient":
        return cls(
            base_url=settings.api_base_url,
            internal_secret=settings.api_internal_secret,
            passphrase=settings.reportmate_passphrase,
            user_agent=settings.user_agent,
            session=session,
        )

    @property
    def base_url(self) -> str:
        if not self._base_url:
            raise ConfigurationError(details="API_BASE_URL environment variable not configured")
        return self._base_url

    def headers(self) -> Dict[str, str]:
        """Service-to-service headers; the shared secret takes priority over the passphrase."""
        headers = {
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
            "User-Agent": self._user_agent,
        }
        if self._internal_secret:
            headers["X-Internal-Secret"] = self._internal_secret
        elif self._passphrase:
            headers["X-API-PASSPHRASE"] = self._passphrase
        return headers

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def detail_url(self, entity_id: str) -> str:
        return self.url(DEVICE_DETAIL_PATH.format(entity_id=quote(entity_id, safe="")))

    def get_json(self, url: str, timeout: float = LIST_TIMEOUT, params: Optional[dict] = None) -> Any:
        response = self.session.get(url, headers=self.headers(), params=params, timeout=timeout)
        response.raise_for_status()
        return response.json()

    def get_detail(self, url: str, timeout: float) -> Dict[str, Any]:
        """Fetch one device document. Used as the fan-out's per-item fetch."""
        document = unwrap_document(self.get_json(url, timeout=timeout))
        if not isinstance(document, dict):
            raise UpstreamDetailError(url, details="detail response is not an object")
        return document

    def list_records(
        self,
        path: str,
        keys: Sequence[str] = ("devices",),
        params: Optional[dict] = None,
        timeout: float = LIST_TIMEOUT,
    ) -> List[Dict[str, Any]]:
        """
        Fetch a list endpoint.

        Raises:
            ConfigurationError: API_BASE_URL missing
            UpstreamListError: Request failed, non-2xx, or unrecognised shape
        """
        url = self.url(path)
        try:
            data = self.get_json(url, timeout=timeout, params=params)
            records = unwrap_list(data, keys)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            logger.error(f"List request {path} failed: HTTP {status}")
            raise UpstreamListError(details=f"{path} returned HTTP {status}") from e
        except requests.RequestException as e:
            logger.error(f"List request {path} failed: {e}")
            raise UpstreamListError(details=f"{path} request failed: {e}") from e
        except ValueError as e:
            logger.error(f"List request {path} returned an unexpected body: {e}")
            raise UpstreamListError(details=f"{path} returned an unexpected body: {e}") from e

        logger.info(f"Fetched {len(records)} records from {path}")
        return records

    def get_device(self, device_id: str, timeout: float = LIST_TIMEOUT) -> Optional[Dict[str, Any]]:
        """
        Single device passthrough. Returns None when the upstream says 404.

        Raises:
            UpstreamDetailError: Any other failure
        """
        try:
            return self.get_detail(self.detail_url(device_id), timeout)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 404:
                return None
            raise UpstreamDetailError(device_id, details=f"HTTP {status}") from e
        except (requests.RequestException, ValueError) as e:
            raise UpstreamDetailError(device_id, details=str(e)) from e
