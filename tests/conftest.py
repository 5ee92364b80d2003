"""Shared pytest fixtures for vcloud workflow tests."""
import itertools
import os
import sys
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

# No control plane is configured in CI; settings must not demand one.
os.environ.setdefault("TESTING", "true")

from config.settings import PollingSettings, ProductSettings, get_settings  # noqa: E402
from vcloud.client import ControlPlane, OperationKind  # noqa: E402
from vcloud.errors import NotFoundError, SpuriousRejectionError  # noqa: E402
from vcloud.locator import ResourceLocator  # noqa: E402
from vcloud.models import (  # noqa: E402
    AsyncTask,
    CatalogRecord,
    IpAllocationMode,
    ManagedResource,
    NetworkConnection,
    NetworkRecord,
    ResourceKind,
    ResourceStatus,
    TaskStatus,
)
from vcloud.products import ComputeShapeCatalog  # noqa: E402
from vcloud.provisioning.executor import WorkflowOrchestrator  # noqa: E402
from vcloud.provisioning.state import WorkflowStateManager  # noqa: E402

ENDPOINT = "https://vcd.example.com/api"
API_VERSION = "5.1"
PREFIX = f"{ENDPOINT}/v{API_VERSION}"


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Settings are cached process-wide; start every test from the environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# In-memory control plane
# =============================================================================


@dataclass
class FakeResource:
    href: str
    name: str
    kind: ResourceKind
    status: ResourceStatus
    description: str = ""
    children: List[str] = field(default_factory=list)
    parent_href: Optional[str] = None
    vdc_href: Optional[str] = None
    connections: List[NetworkConnection] = field(default_factory=list)
    cpu_count: int = 1
    memory_mb: int = 512
    computer_name: Optional[str] = None
    tasks: List[str] = field(default_factory=list)


class FakeCloud:
    """
    Remote state shared by every session opened through ``session()``.

    Submitted operations take effect immediately and return a RUNNING task
    that reaches its outcome the first time it is re-fetched. Failures are
    injected per operation kind through ``fail``.
    """

    def __init__(self):
        self.locator = ResourceLocator(ENDPOINT, API_VERSION)
        self.resources: Dict[str, FakeResource] = {}
        self.tasks: Dict[str, AsyncTask] = {}
        self._outcomes: Dict[str, AsyncTask] = {}
        self.calls: List[tuple] = []
        self.fail: Dict[OperationKind, str] = {}
        self.capture_error: Optional[str] = None
        self.spurious_deletes = 0
        self.delete_attempts = 0
        self.networks: List[NetworkRecord] = []
        self.catalogs: List[CatalogRecord] = []
        self.catalog_items: Dict[str, List[str]] = {}
        self.datacenters = [f"{PREFIX}/vdc/vdc-1"]
        self.sessions_opened = 0
        self.sessions_closed = 0
        self._ids = itertools.count(1)

    def session(self) -> "FakeControlPlane":
        return FakeControlPlane(self)

    # ----- scenario builders -------------------------------------------------

    def _next(self) -> int:
        return next(self._ids)

    def add_network(self, name: str) -> NetworkRecord:
        network_id = f"/network/net-{self._next()}"
        network = NetworkRecord(network_id=network_id, name=name, href=f"{PREFIX}{network_id}")
        self.networks.append(network)
        return network

    def add_catalog(self, name: str, published: bool = False) -> CatalogRecord:
        catalog = CatalogRecord(href=f"{PREFIX}/catalog/cat-{self._next()}", name=name, published=published)
        self.catalogs.append(catalog)
        self.catalog_items[catalog.href] = []
        return catalog

    def add_template(self, name: str = "centos 64-bit", machines: int = 1,
                     network: str = "template-net") -> str:
        href = f"{PREFIX}/vAppTemplate/vappTemplate-{self._next()}"
        template = FakeResource(href, name, ResourceKind.TEMPLATE, ResourceStatus.RESOLVED,
                                vdc_href=self.datacenters[0])
        for i in range(machines):
            vm_href = f"{PREFIX}/vAppTemplate/vm-{self._next()}"
            self.resources[vm_href] = FakeResource(
                vm_href, f"{name}-vm{i}", ResourceKind.MACHINE, ResourceStatus.RESOLVED,
                parent_href=href,
                connections=[NetworkConnection(network, 0, True, IpAllocationMode.DHCP)],
            )
            template.children.append(vm_href)
        self.resources[href] = template
        return self.locator.to_id(href)

    def add_group(self, name: str = "web", machines: int = 1,
                  status: ResourceStatus = ResourceStatus.POWERED_ON,
                  connections: Optional[List[NetworkConnection]] = None) -> List[str]:
        """Create a group; returns the machine ids."""
        href = f"{PREFIX}/vApp/vapp-{self._next()}"
        group = FakeResource(href, name, ResourceKind.GROUP, status,
                             description="/vAppTemplate/vappTemplate-0",
                             vdc_href=self.datacenters[0])
        self.resources[href] = group
        machine_ids = []
        for i in range(machines):
            vm_href = f"{PREFIX}/vApp/vm-{self._next()}"
            self.resources[vm_href] = FakeResource(
                vm_href, f"{name}-{i + 1}", ResourceKind.MACHINE, status,
                parent_href=href,
                connections=list(connections or []),
            )
            group.children.append(vm_href)
            machine_ids.append(self.locator.to_id(vm_href))
        return machine_ids

    def add_standalone_machine(self, status: ResourceStatus = ResourceStatus.POWERED_ON) -> str:
        vm_href = f"{PREFIX}/vApp/vm-{self._next()}"
        self.resources[vm_href] = FakeResource(vm_href, "solo", ResourceKind.MACHINE, status)
        return self.locator.to_id(vm_href)

    # ----- inspection --------------------------------------------------------

    def get(self, resource_id: str) -> Optional[FakeResource]:
        return self.resources.get(self.locator.to_href(resource_id))

    def parent_of(self, machine_id: str) -> Optional[FakeResource]:
        return self.resources.get(self.get(machine_id).parent_href)

    def groups(self) -> List[FakeResource]:
        return [r for r in self.resources.values() if r.kind == ResourceKind.GROUP]

    def kinds_called(self) -> List[OperationKind]:
        return [call[0] for call in self.calls]

    # ----- remote behaviour --------------------------------------------------

    def snapshot(self, href: str) -> Optional[ManagedResource]:
        res = self.resources.get(href)
        if res is None:
            return None
        return ManagedResource(
            href=res.href,
            name=res.name,
            kind=res.kind,
            status=res.status,
            description=res.description,
            tasks=[self.tasks[t] for t in res.tasks],
            children=[self.snapshot(c) for c in res.children if c in self.resources],
            parent_href=res.parent_href,
            vdc_href=res.vdc_href,
            network_connections=list(res.connections),
            primary_connection_index=res.connections[0].index if res.connections else None,
            cpu_count=res.cpu_count,
            memory_mb=res.memory_mb,
            computer_name=res.computer_name,
        )

    def new_task(self, operation: str, owner: Optional[str], error: Optional[str] = None) -> AsyncTask:
        href = f"{PREFIX}/task/{self._next()}"
        task = AsyncTask(href=href, status=TaskStatus.RUNNING, operation=operation)
        if error:
            outcome = replace(task, status=TaskStatus.ERROR, error_message=error)
        else:
            outcome = replace(task, status=TaskStatus.SUCCESS)
        self.tasks[href] = task
        self._outcomes[href] = outcome
        if owner in self.resources:
            self.resources[owner].tasks.append(href)
        return task

    def finish_task(self, href: str) -> Optional[AsyncTask]:
        if href not in self.tasks:
            return None
        self.tasks[href] = self._outcomes[href]
        return self.tasks[href]

    def _set_status(self, href: str, status: ResourceStatus, recurse: bool = True) -> None:
        res = self.resources[href]
        res.status = status
        if recurse:
            for child in res.children:
                self._set_status(child, status)

    def _remove(self, href: str) -> None:
        res = self.resources.pop(href, None)
        if res is None:
            return
        for child in res.children:
            self._remove(child)

    def apply(self, kind: OperationKind, href: str, params: dict) -> None:
        if kind == OperationKind.POWER_ON:
            self._set_status(href, ResourceStatus.POWERED_ON)
        elif kind == OperationKind.POWER_OFF:
            self._set_status(href, ResourceStatus.POWERED_OFF)
        elif kind == OperationKind.UNDEPLOY:
            self._set_status(href, ResourceStatus.POWERED_OFF)
            self.resources[href].status = ResourceStatus.RESOLVED
        elif kind == OperationKind.DEPLOY:
            target = ResourceStatus.POWERED_ON if params.get("power_on") else ResourceStatus.DEPLOYED
            self._set_status(href, target)
        elif kind == OperationKind.EDIT_NETWORK_CONNECTIONS:
            self.resources[href].connections = list(params["connections"])
        elif kind == OperationKind.EDIT_GUEST_CUSTOMIZATION:
            self.resources[href].computer_name = params["computer_name"]
        elif kind == OperationKind.EDIT_CPU:
            self.resources[href].cpu_count = params["cpu_count"]
        elif kind == OperationKind.EDIT_MEMORY:
            self.resources[href].memory_mb = params["memory_mb"]


class FakeControlPlane(ControlPlane):
    """One session against a FakeCloud."""

    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud
        self.locator = cloud.locator

    def login(self, correlation_id: str = "") -> bool:
        self.cloud.sessions_opened += 1
        return True

    def logout(self, correlation_id: str = "") -> bool:
        self.cloud.sessions_closed += 1
        return True

    def fetch_resource(self, href, correlation_id=""):
        res = self.cloud.resources.get(href)
        if res is not None and res.status == ResourceStatus.UNRESOLVED:
            # Materializes on the first look after creation
            res.status = ResourceStatus.POWERED_OFF
            return replace(self.cloud.snapshot(href), status=ResourceStatus.UNRESOLVED)
        return self.cloud.snapshot(href)

    def fetch_task(self, href, correlation_id=""):
        return self.cloud.finish_task(href)

    def submit_operation(self, kind, href, params=None, correlation_id=""):
        params = params or {}
        self.cloud.calls.append((kind, href, params))
        if href not in self.cloud.resources:
            raise NotFoundError(f"No such entity {href}")
        if kind == OperationKind.REMOVE:
            self.cloud.delete_attempts += 1
            if self.cloud.spurious_deletes > 0:
                self.cloud.spurious_deletes -= 1
                raise SpuriousRejectionError("The requested operation could not be executed since vApp is not running")
            self.cloud._remove(href)
            return self.cloud.new_task("vdcDeleteVapp", None)
        error = self.cloud.fail.get(kind)
        if error is None:
            self.cloud.apply(kind, href, params)
        if kind == OperationKind.REBOOT:
            return None
        return self.cloud.new_task(kind.value, href, error)

    def instantiate_template(self, vdc_href, template_href, name, description="",
                             network_name=None, correlation_id=""):
        template = self.cloud.resources[template_href]
        group_href = f"{PREFIX}/vApp/vapp-{self.cloud._next()}"
        group = FakeResource(group_href, name, ResourceKind.GROUP, ResourceStatus.UNRESOLVED,
                             description=description, vdc_href=vdc_href)
        self.cloud.resources[group_href] = group
        for source_href in template.children:
            source = self.cloud.resources[source_href]
            vm_href = f"{PREFIX}/vApp/vm-{self.cloud._next()}"
            connections = list(source.connections)
            if network_name:
                connections = [replace(c, network=network_name) for c in connections]
            self.cloud.resources[vm_href] = FakeResource(
                vm_href, source.name, ResourceKind.MACHINE, ResourceStatus.POWERED_OFF,
                parent_href=group_href, connections=connections,
            )
            group.children.append(vm_href)
        self.cloud.calls.append(("instantiate", template_href, {"name": name, "network": network_name}))
        return self.cloud.snapshot(group_href)

    def capture_group(self, vdc_href, group_href, name, description="", correlation_id=""):
        self.cloud.calls.append(("capture", group_href, {"name": name}))
        # Capturing drops the NIC bindings of the source machines
        for child in self.cloud.resources[group_href].children:
            self.cloud.resources[child].connections = []
        href = f"{PREFIX}/vAppTemplate/vappTemplate-{self.cloud._next()}"
        self.cloud.resources[href] = FakeResource(href, name, ResourceKind.TEMPLATE,
                                                  ResourceStatus.RESOLVED, description=description,
                                                  vdc_href=vdc_href)
        self.cloud.new_task("vappCapture", href, self.cloud.capture_error)
        return self.cloud.snapshot(href)

    def add_catalog_item(self, catalog_href, name, description, entity_href, correlation_id=""):
        self.cloud.catalog_items[catalog_href].append(entity_href)
        return self.cloud.new_task("catalogCreateCatalogItem", None)

    def get_network_connections(self, machine_href, correlation_id=""):
        return list(self.cloud.resources[machine_href].connections)

    def list_networks(self, correlation_id=""):
        return list(self.cloud.networks)

    def get_network(self, href, correlation_id=""):
        return next((n for n in self.cloud.networks if n.href == href), None)

    def list_catalogs(self, correlation_id=""):
        return list(self.cloud.catalogs)

    def list_catalog_templates(self, catalog_href, correlation_id=""):
        return list(self.cloud.catalog_items.get(catalog_href, []))

    def list_datacenters(self, correlation_id=""):
        return list(self.cloud.datacenters)

    def list_groups(self, vdc_href, correlation_id=""):
        return [g.href for g in self.cloud.groups() if g.vdc_href == vdc_href]

    def org_name(self, correlation_id=""):
        return "acme"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def polling():
    """Zero intervals so every poll loop runs without sleeping."""
    return PollingSettings(
        task_poll_interval=0,
        idle_poll_interval=0,
        unresolved_poll_interval=0,
        task_timeout=10,
        idle_timeout=10,
        delete_retry_delay=0,
        delete_max_attempts=5,
    )


@pytest.fixture
def shapes():
    return ComputeShapeCatalog.from_settings(ProductSettings())


@pytest.fixture
def orchestrator(cloud, polling, shapes):
    return WorkflowOrchestrator(
        client_factory=cloud.session,
        state_manager=WorkflowStateManager(),
        shapes=shapes,
        polling=polling,
    )
