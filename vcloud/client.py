"""
Control-plane REST client for vCloud Director style APIs.

Provides session management, resource and task retrieval, and submission
of the asynchronous operations the workflows drive.

Usage:
    from vcloud.client import VCloudClient, OperationKind

    with VCloudClient() as client:  # Uses settings/env vars for credentials
        vm = client.fetch_resource(client.locator.to_href("/vApp/vm-42"))
        task = client.submit_operation(OperationKind.POWER_OFF, vm.href)

Environment Variables:
    VCLOUD_ENDPOINT: API endpoint (e.g. https://vcd.example.com/api)
    VCLOUD_API_VERSION: API version (default: 5.1)
    VCLOUD_USERNAME / VCLOUD_ORG / VCLOUD_PASSWORD: credentials
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
import urllib3
from requests.auth import HTTPBasicAuth
from requests.exceptions import ConnectionError, Timeout, RequestException

from config.settings import VCloudSettings, get_settings
from vcloud.errors import (
    AuthenticationError,
    AuthorizationError,
    CloudError,
    NotFoundError,
    SpuriousRejectionError,
    TransientObservationError,
)
from vcloud.locator import ResourceLocator
from vcloud.models import (
    RESOURCE_TYPE_MEMORY,
    RESOURCE_TYPE_PROCESSOR,
    AsyncTask,
    CatalogRecord,
    ManagedResource,
    NetworkConnection,
    NetworkRecord,
)

logger = logging.getLogger(__name__)

MEDIA_TYPE_PREFIX = "application/vnd.vmware.vcloud."
AUTH_HEADER = "x-vcloud-authorization"

# vCloud reports "you asked for something this entity's state forbids"
# with this minor code, including for requests that are in fact valid.
INVALID_STATE_CODE = "INVALID_STATE"


class OperationKind(Enum):
    """Asynchronous operations that return a task."""

    POWER_ON = "powerOn"
    POWER_OFF = "powerOff"
    REBOOT = "reboot"
    DEPLOY = "deploy"
    UNDEPLOY = "undeploy"
    EDIT_NETWORK_CONNECTIONS = "editNetworkConnections"
    EDIT_GUEST_CUSTOMIZATION = "editGuestCustomization"
    EDIT_CPU = "editCpu"
    EDIT_MEMORY = "editMemory"
    REMOVE = "remove"


class UndeployPowerAction(Enum):
    POWER_OFF = "powerOff"
    SUSPEND = "suspend"
    SHUTDOWN = "shutdown"
    FORCE = "force"


# =============================================================================
# API Version Dialects
# =============================================================================


@dataclass(frozen=True)
class ApiDialect:
    """Wire differences between API versions, kept out of the workflows."""

    version: str

    @property
    def legacy(self) -> bool:
        return self.version.startswith("1.0")

    @property
    def accept(self) -> str:
        return f"application/*+json;version={self.version}"

    def undeploy_payload(self, action: UndeployPowerAction) -> Dict[str, Any]:
        # 1.0 only knows "save state or not"
        if self.legacy:
            return {"saveState": action == UndeployPowerAction.SUSPEND}
        return {"undeployPowerAction": action.value}


# =============================================================================
# Interface
# =============================================================================


class ControlPlane(ABC):
    """
    Everything the workflows need from the remote control plane.

    Implementations are used as scoped sessions: entering logs in,
    exiting always logs out.
    """

    locator: ResourceLocator

    def __enter__(self):
        """Context manager entry - login."""
        self.login()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - logout."""
        self.logout()
        return False

    @abstractmethod
    def login(self, correlation_id: str = "") -> bool: ...

    @abstractmethod
    def logout(self, correlation_id: str = "") -> bool: ...

    @abstractmethod
    def fetch_resource(self, href: str, correlation_id: str = "") -> Optional[ManagedResource]:
        """Fetch a group, machine or template with children; None if it is gone."""

    @abstractmethod
    def fetch_task(self, href: str, correlation_id: str = "") -> Optional[AsyncTask]: ...

    @abstractmethod
    def submit_operation(
        self,
        kind: OperationKind,
        href: str,
        params: Optional[Dict[str, Any]] = None,
        correlation_id: str = "",
    ) -> Optional[AsyncTask]:
        """Submit an asynchronous operation; None means it completed synchronously."""

    def delete_resource(self, href: str, correlation_id: str = "") -> Optional[AsyncTask]:
        return self.submit_operation(OperationKind.REMOVE, href, correlation_id=correlation_id)

    def list_child_tasks(self, resource: ManagedResource) -> List[AsyncTask]:
        """All tasks attached to a resource and, transitively, its children."""
        tasks = list(resource.tasks)
        for child in resource.children:
            tasks.extend(self.list_child_tasks(child))
        return tasks

    @abstractmethod
    def instantiate_template(
        self,
        vdc_href: str,
        template_href: str,
        name: str,
        description: str = "",
        network_name: Optional[str] = None,
        correlation_id: str = "",
    ) -> Optional[ManagedResource]:
        """Create a powered-off, undeployed group from a template."""

    @abstractmethod
    def capture_group(
        self,
        vdc_href: str,
        group_href: str,
        name: str,
        description: str = "",
        correlation_id: str = "",
    ) -> ManagedResource:
        """Start capturing a group as a template; the template carries the task."""

    @abstractmethod
    def add_catalog_item(
        self,
        catalog_href: str,
        name: str,
        description: str,
        entity_href: str,
        correlation_id: str = "",
    ) -> Optional[AsyncTask]: ...

    @abstractmethod
    def get_network_connections(self, machine_href: str, correlation_id: str = "") -> List[NetworkConnection]: ...

    @abstractmethod
    def list_networks(self, correlation_id: str = "") -> List[NetworkRecord]: ...

    @abstractmethod
    def get_network(self, href: str, correlation_id: str = "") -> Optional[NetworkRecord]: ...

    @abstractmethod
    def list_catalogs(self, correlation_id: str = "") -> List[CatalogRecord]: ...

    @abstractmethod
    def list_catalog_templates(self, catalog_href: str, correlation_id: str = "") -> List[str]: ...

    @abstractmethod
    def list_datacenters(self, correlation_id: str = "") -> List[str]: ...

    @abstractmethod
    def list_groups(self, vdc_href: str, correlation_id: str = "") -> List[str]: ...

    @abstractmethod
    def org_name(self, correlation_id: str = "") -> str: ...


# =============================================================================
# REST Adapter
# =============================================================================


class VCloudClient(ControlPlane):
    """
    vCloud Director REST API client.

    Attributes:
        endpoint: API endpoint including the ``/api`` path
        username: API username (without org)
        org: Organization to log into
        dialect: Version-specific wire details
        authenticated: Whether client has active session
    """

    # (method, path suffix, media type of the request body)
    _OPERATIONS = {
        OperationKind.POWER_ON: ("POST", "/power/action/powerOn", None),
        OperationKind.POWER_OFF: ("POST", "/power/action/powerOff", None),
        OperationKind.REBOOT: ("POST", "/power/action/reboot", None),
        OperationKind.DEPLOY: ("POST", "/action/deploy", "deployVAppParams"),
        OperationKind.UNDEPLOY: ("POST", "/action/undeploy", "undeployVAppParams"),
        OperationKind.EDIT_NETWORK_CONNECTIONS: ("PUT", "/networkConnectionSection/", "networkConnectionSection"),
        OperationKind.EDIT_GUEST_CUSTOMIZATION: ("PUT", "/guestCustomizationSection/", "guestCustomizationSection"),
        OperationKind.EDIT_CPU: ("PUT", "/virtualHardwareSection/cpu", "rasdItem"),
        OperationKind.EDIT_MEMORY: ("PUT", "/virtualHardwareSection/memory", "rasdItem"),
        OperationKind.REMOVE: ("DELETE", "", None),
    }

    def __init__(
        self,
        endpoint: Optional[str] = None,
        username: Optional[str] = None,
        org: Optional[str] = None,
        password: Optional[str] = None,
        api_version: Optional[str] = None,
        verify_ssl: Optional[bool] = None,
        timeout: Optional[int] = None,
        settings: Optional[VCloudSettings] = None,
    ):
        """
        Initialize control-plane client.

        Args:
            endpoint: API endpoint (env: VCLOUD_ENDPOINT)
            username: API username (env: VCLOUD_USERNAME)
            org: Organization name (env: VCLOUD_ORG)
            password: API password (env: VCLOUD_PASSWORD)
            api_version: API version (env: VCLOUD_API_VERSION)
            verify_ssl: Verify TLS certificates (env: VCLOUD_VERIFY_SSL)
            timeout: Request timeout in seconds
            settings: Explicit settings instead of get_settings().vcloud
        """
        settings = settings or get_settings().vcloud
        self.endpoint = (endpoint or settings.endpoint).rstrip("/")
        self.username = username if username is not None else settings.username
        self.org = org if org is not None else settings.org
        self.password = password if password is not None else settings.password.get_secret_value()
        self.dialect = ApiDialect(api_version or settings.api_version)
        self.timeout = timeout or settings.request_timeout
        self.locator = ResourceLocator(self.endpoint, self.dialect.version)

        self.session = requests.Session()
        self.session.verify = settings.verify_ssl if verify_ssl is None else verify_ssl
        self.authenticated = False
        self._org_href: Optional[str] = None
        self._org_data: Optional[Dict[str, Any]] = None

        if not self.session.verify:
            # Suppress SSL warnings for self-signed certs
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.session.headers.update({"Accept": self.dialect.accept})

    def _url(self, href_or_path: str) -> str:
        if href_or_path.startswith("http:") or href_or_path.startswith("https:"):
            return href_or_path
        return f"{self.endpoint}{href_or_path}"

    def _request(
        self,
        method: str,
        href_or_path: str,
        data: Optional[Dict] = None,
        media_type: Optional[str] = None,
        correlation_id: str = "",
        auth: Any = None,
    ) -> Dict:
        """
        Make authenticated API request.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            href_or_path: Absolute href or path below the endpoint
            data: Request body data
            media_type: Short vCloud media type name of the body (e.g. "deployVAppParams")
            correlation_id: For log tracing
            auth: Explicit auth (login only)

        Returns:
            JSON response data ({} for empty bodies)

        Raises:
            TransientObservationError: Cannot reach the control plane
            AuthenticationError: Session missing or expired
            AuthorizationError: Caller may not see or touch the resource
            NotFoundError: Resource does not exist
            SpuriousRejectionError: Request rejected for entity state
            CloudError: Other API errors
        """
        url = self._url(href_or_path)
        log_prefix = f"[{correlation_id}] " if correlation_id else ""
        headers = {}
        if data is not None:
            subtype = f"{MEDIA_TYPE_PREFIX}{media_type}+json" if media_type else "application/json"
            headers["Content-Type"] = subtype

        try:
            logger.debug(f"{log_prefix}vCloud {method} {url}")

            response = self.session.request(
                method=method,
                url=url,
                json=data,
                headers=headers,
                timeout=self.timeout,
                auth=auth,
            )
        except (ConnectionError, Timeout) as e:
            raise TransientObservationError(
                f"{log_prefix}Cannot reach control plane at {self.endpoint}: {e}"
            ) from e
        except RequestException as e:
            raise CloudError(f"{log_prefix}Request failed: {e}") from e

        if response.status_code >= 400:
            self._raise_for_error(response, log_prefix)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    def _raise_for_error(self, response: requests.Response, log_prefix: str) -> None:
        message = f"API error {response.status_code}"
        minor_code = ""
        try:
            error_data = response.json()
            message = error_data.get("message") or message
            minor_code = error_data.get("minorErrorCode") or ""
        except ValueError:
            message = response.text or message

        if response.status_code == 401:
            self.authenticated = False
            raise AuthenticationError(f"{log_prefix}Authentication required - please login")
        if minor_code == INVALID_STATE_CODE:
            raise SpuriousRejectionError(f"{log_prefix}{message}")
        if response.status_code == 403:
            raise AuthorizationError(f"{log_prefix}{message}")
        if response.status_code == 404:
            raise NotFoundError(f"{log_prefix}{message}")
        raise CloudError(f"{log_prefix}{message}", status_code=response.status_code)

    # =========================================================================
    # Session
    # =========================================================================

    def login(self, correlation_id: str = "") -> bool:
        """
        Open an API session.

        Raises:
            AuthenticationError: Invalid credentials
            TransientObservationError: Cannot connect to server
        """
        log_prefix = f"[{correlation_id}] " if correlation_id else ""
        logger.debug(f"{log_prefix}Logging into {self.endpoint} as {self.username}@{self.org}")

        try:
            response = self.session.post(
                self._url("/sessions"),
                auth=HTTPBasicAuth(f"{self.username}@{self.org}", self.password),
                timeout=self.timeout,
            )
        except (ConnectionError, Timeout) as e:
            raise TransientObservationError(
                f"{log_prefix}Cannot reach control plane at {self.endpoint}: {e}"
            ) from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"{log_prefix}Invalid credentials for user '{self.username}@{self.org}'"
            )
        if response.status_code >= 400:
            self._raise_for_error(response, log_prefix)

        token = response.headers.get(AUTH_HEADER)
        if token:
            self.session.headers[AUTH_HEADER] = token
        self.authenticated = True
        return True

    def logout(self, correlation_id: str = "") -> bool:
        """End the API session. Never raises."""
        if not self.authenticated:
            return True
        try:
            self._request("DELETE", "/session", correlation_id=correlation_id)
        except CloudError as e:
            logger.debug(f"Logout failed (ignored): {e}")
        self.authenticated = False
        self.session.headers.pop(AUTH_HEADER, None)
        return True

    # =========================================================================
    # Resources and Tasks
    # =========================================================================

    def fetch_resource(self, href: str, correlation_id: str = "") -> Optional[ManagedResource]:
        try:
            data = self._request("GET", href, correlation_id=correlation_id)
        except NotFoundError:
            return None
        return ManagedResource.from_payload(data)

    def fetch_task(self, href: str, correlation_id: str = "") -> Optional[AsyncTask]:
        try:
            data = self._request("GET", href, correlation_id=correlation_id)
        except NotFoundError:
            return None
        return AsyncTask.from_payload(data)

    def submit_operation(
        self,
        kind: OperationKind,
        href: str,
        params: Optional[Dict[str, Any]] = None,
        correlation_id: str = "",
    ) -> Optional[AsyncTask]:
        method, suffix, media_type = self._OPERATIONS[kind]
        body = self._operation_body(kind, params or {})
        log_prefix = f"[{correlation_id}] " if correlation_id else ""
        logger.info(f"{log_prefix}Submitting {kind.value} on {href}")

        data = self._request(
            method,
            f"{href}{suffix}",
            data=body,
            media_type=media_type,
            correlation_id=correlation_id,
        )
        return self._task_from_response(data)

    def _operation_body(self, kind: OperationKind, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if kind == OperationKind.DEPLOY:
            return {"powerOn": params.get("power_on", True)}
        if kind == OperationKind.UNDEPLOY:
            action = params.get("power_action", UndeployPowerAction.POWER_OFF)
            return self.dialect.undeploy_payload(UndeployPowerAction(action))
        if kind == OperationKind.EDIT_NETWORK_CONNECTIONS:
            connections: List[NetworkConnection] = params.get("connections", [])
            body: Dict[str, Any] = {
                "networkConnection": [c.to_payload() for c in connections],
            }
            if connections:
                body["primaryNetworkConnectionIndex"] = params.get(
                    "primary_index", connections[0].index
                )
            return body
        if kind == OperationKind.EDIT_GUEST_CUSTOMIZATION:
            return {
                "enabled": params.get("enabled", True),
                "computerName": params["computer_name"],
                "info": params.get("info", ""),
            }
        if kind == OperationKind.EDIT_CPU:
            return {"resourceType": RESOURCE_TYPE_PROCESSOR, "virtualQuantity": int(params["cpu_count"])}
        if kind == OperationKind.EDIT_MEMORY:
            return {"resourceType": RESOURCE_TYPE_MEMORY, "virtualQuantity": int(params["memory_mb"])}
        return None

    @staticmethod
    def _task_from_response(data: Dict[str, Any]) -> Optional[AsyncTask]:
        if not data:
            return None
        if "status" in data and "href" in data and "/task/" in data["href"]:
            return AsyncTask.from_payload(data)
        tasks = (data.get("tasks") or {}).get("task") or []
        if tasks:
            return AsyncTask.from_payload(tasks[0])
        return None

    def instantiate_template(
        self,
        vdc_href: str,
        template_href: str,
        name: str,
        description: str = "",
        network_name: Optional[str] = None,
        correlation_id: str = "",
    ) -> Optional[ManagedResource]:
        body: Dict[str, Any] = {
            "name": name,
            "description": description,
            "deploy": False,
            "powerOn": False,
            "source": {"href": template_href},
        }
        if network_name:
            body["instantiationParams"] = {
                "section": [{
                    "_type": "NetworkConnectionSectionType",
                    "networkConnection": [{"network": network_name}],
                }],
            }
        data = self._request(
            "POST",
            f"{vdc_href}/action/instantiateVAppTemplate",
            data=body,
            media_type="instantiateVAppTemplateParams",
            correlation_id=correlation_id,
        )
        if not data.get("href"):
            return None
        return ManagedResource.from_payload(data)

    def capture_group(
        self,
        vdc_href: str,
        group_href: str,
        name: str,
        description: str = "",
        correlation_id: str = "",
    ) -> ManagedResource:
        data = self._request(
            "POST",
            f"{vdc_href}/action/captureVApp",
            data={"name": name, "description": description, "source": {"href": group_href}},
            media_type="captureVAppParams",
            correlation_id=correlation_id,
        )
        return ManagedResource.from_payload(data)

    def add_catalog_item(
        self,
        catalog_href: str,
        name: str,
        description: str,
        entity_href: str,
        correlation_id: str = "",
    ) -> Optional[AsyncTask]:
        data = self._request(
            "POST",
            f"{catalog_href}/catalogItems",
            data={"name": name, "description": description, "entity": {"href": entity_href}},
            media_type="catalogItem",
            correlation_id=correlation_id,
        )
        return self._task_from_response(data)

    def get_network_connections(self, machine_href: str, correlation_id: str = "") -> List[NetworkConnection]:
        data = self._request(
            "GET", f"{machine_href}/networkConnectionSection/", correlation_id=correlation_id
        )
        return [NetworkConnection.from_payload(c) for c in data.get("networkConnection") or []]

    # =========================================================================
    # Organization
    # =========================================================================

    def _org(self, correlation_id: str = "") -> Dict[str, Any]:
        """Fetch (once per session) the organization this client logged into."""
        if self._org_data is None:
            org_list = self._request("GET", "/org", correlation_id=correlation_id)
            orgs = org_list.get("org") or []
            match = next((o for o in orgs if o.get("name") == self.org), None)
            if match is None and orgs:
                match = orgs[0]
            if match is None:
                raise NotFoundError(f"Organization '{self.org}' not visible to {self.username}")
            self._org_href = match["href"]
            self._org_data = self._request("GET", self._org_href, correlation_id=correlation_id)
        return self._org_data

    def _org_links(self, type_fragment: str, correlation_id: str = "") -> List[Dict[str, Any]]:
        return [
            link for link in self._org(correlation_id).get("link") or []
            if type_fragment in (link.get("type") or "")
        ]

    def org_name(self, correlation_id: str = "") -> str:
        return self._org(correlation_id).get("name", self.org)

    def list_networks(self, correlation_id: str = "") -> List[NetworkRecord]:
        return [
            NetworkRecord(
                network_id=self.locator.to_id(link["href"]),
                name=link.get("name", ""),
                href=link["href"],
            )
            for link in self._org_links("orgNetwork+", correlation_id)
        ]

    def get_network(self, href: str, correlation_id: str = "") -> Optional[NetworkRecord]:
        try:
            data = self._request("GET", href, correlation_id=correlation_id)
        except NotFoundError:
            return None
        return NetworkRecord(
            network_id=self.locator.to_id(data.get("href", href)),
            name=data.get("name", ""),
            href=data.get("href", href),
        )

    def list_catalogs(self, correlation_id: str = "") -> List[CatalogRecord]:
        catalogs = []
        for link in self._org_links("catalog+", correlation_id):
            data = self._request("GET", link["href"], correlation_id=correlation_id)
            catalogs.append(CatalogRecord(
                href=link["href"],
                name=data.get("name", link.get("name", "")),
                published=bool(data.get("isPublished", False)),
            ))
        return catalogs

    def list_catalog_templates(self, catalog_href: str, correlation_id: str = "") -> List[str]:
        data = self._request("GET", catalog_href, correlation_id=correlation_id)
        hrefs = []
        for ref in (data.get("catalogItems") or {}).get("catalogItem") or []:
            item = self._request("GET", ref["href"], correlation_id=correlation_id)
            entity = item.get("entity") or {}
            if "vAppTemplate+" in (entity.get("type") or ""):
                hrefs.append(entity["href"])
        return hrefs

    def list_datacenters(self, correlation_id: str = "") -> List[str]:
        return [link["href"] for link in self._org_links("vdc+", correlation_id)]

    def list_groups(self, vdc_href: str, correlation_id: str = "") -> List[str]:
        data = self._request("GET", vdc_href, correlation_id=correlation_id)
        entities = (data.get("resourceEntities") or {}).get("resourceEntity") or []
        return [e["href"] for e in entities if "vApp+" in (e.get("type") or "")]
