"""
IoT platform REST operations.

Handles tenant options, tenant details, binary storage, inventory lookups and
events for the tenant the service is subscribed to.
"""

import json
from typing import Any, Dict, Optional

import requests

from .config_loader import PlatformConfig
from .logger import get_logger


class PlatformError(Exception):
    """Raised when a platform operation fails."""
    pass


class PlatformClient:
    """
    Client for the platform's REST API.

    Authenticates with basic auth as ``<tenant>/<user>`` and sends the
    application key header when one is configured.
    """

    def __init__(
        self,
        config: PlatformConfig,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        """
        Initialize the platform client.

        Args:
            config: Platform connection details
            session: Optional pre-built session (mainly for tests)
            timeout: Per-request timeout in seconds
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.timeout = timeout
        self.logger = get_logger()
        self._session = session

    @property
    def session(self) -> requests.Session:
        """The HTTP session, created on first use."""
        if self._session is None:
            self._session = build_session(self.config)
        return self._session

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise PlatformError(f"{method} {path} failed: {e}")

    @staticmethod
    def _expect(response: requests.Response, status: int, action: str) -> None:
        if response.status_code != status:
            raise PlatformError(
                f"Failed to {action}. Received status code: {response.status_code}"
            )

    def list_tenant_options(self, category: str) -> Dict[str, str]:
        """
        List the tenant options of a category.

        Args:
            category: Option category (the application name)

        Returns:
            Mapping of option key to value
        """
        response = self._request("GET", f"/tenant/options/{category}")
        self._expect(response, 200, f"list options of category {category}")
        return response.json()

    def create_tenant_option(self, category: str, key: str, value: str) -> None:
        """Create (or overwrite) a tenant option."""
        response = self._request(
            "POST",
            "/tenant/options",
            json={"category": category, "key": key, "value": value},
        )
        self._expect(response, 200, f"create option {category}.{key}")

    def get_tenant_domain(self, tenant_id: str) -> str:
        """
        Get the domain name of a tenant.

        Args:
            tenant_id: Tenant id (e.g. ``edge``)

        Returns:
            The tenant's domain
        """
        response = self._request("GET", f"/tenant/tenants/{tenant_id}")
        self._expect(response, 200, f"read tenant {tenant_id}")
        domain = response.json().get("domain")
        if not domain:
            raise PlatformError(f"Tenant {tenant_id} has no domain")
        return domain

    def _find_managed_object_id(self, query: str) -> Optional[str]:
        response = self._request(
            "GET",
            "/inventory/managedObjects",
            params={"query": query, "pageSize": 1},
        )
        self._expect(response, 200, "query inventory")
        managed_objects = response.json().get("managedObjects", [])
        if not managed_objects:
            return None
        return managed_objects[0]["id"]

    def find_newest_binary(self, name: str, owner: str) -> Optional[str]:
        """
        Find the most recently created binary with the given name and owner.

        Returns:
            Binary id or None if there is none
        """
        query = (
            f"$filter=(name eq '{name}' and owner eq '{owner}' and has(c8y_IsBinary)) "
            f"$orderby=creationTime.date desc,creationTime desc"
        )
        return self._find_managed_object_id(query)

    def find_application_device(self, application_name: str) -> Optional[str]:
        """Id of the managed object representing the application, if any."""
        query = f"type eq 'c8y_Application_*' and name eq '{application_name}'"
        return self._find_managed_object_id(query)

    def upload_binary(self, name: str, content: bytes) -> str:
        """
        Upload a file to binary storage.

        Args:
            name: File name of the binary
            content: File content

        Returns:
            Id of the created binary
        """
        metadata = {"name": name, "type": "application/octet-stream"}
        response = self._request(
            "POST",
            "/inventory/binaries",
            files={
                "object": (None, json.dumps(metadata), "application/json"),
                "file": (name, content, "application/octet-stream"),
            },
        )
        self._expect(response, 201, f"upload binary {name}")
        binary_id = response.json()["id"]
        self.logger.debug(f"Uploaded binary {name} as {binary_id}")
        return binary_id

    def download_binary(self, binary_id: str) -> bytes:
        """Download the content of a binary."""
        response = self._request("GET", f"/inventory/binaries/{binary_id}")
        self._expect(response, 200, f"download binary {binary_id}")
        return response.content

    def delete_binary(self, binary_id: str) -> None:
        """Delete a binary."""
        response = self._request("DELETE", f"/inventory/binaries/{binary_id}")
        self._expect(response, 204, f"delete binary {binary_id}")
        self.logger.debug(f"Deleted binary {binary_id}")

    def create_event(self, event: Dict[str, Any]) -> None:
        """Create an event."""
        response = self._request("POST", "/event/events", json=event)
        self._expect(response, 201, "create event")


def build_session(config: PlatformConfig, verify: bool = True) -> requests.Session:
    """
    Create an authenticated session for the platform (or the edge behind it).

    Args:
        config: Platform connection details
        verify: Verify TLS certificates of the peer

    Returns:
        Configured requests.Session
    """
    session = requests.Session()
    session.auth = (config.username, config.password)
    session.verify = verify
    session.headers.update({"Accept": "application/json"})
    if config.application_key:
        session.headers["X-Cumulocity-Application-Key"] = config.application_key
    return session
