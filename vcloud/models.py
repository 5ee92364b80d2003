"""
Data model for control-plane resources and workflow inputs/outputs.

Remote records (tasks, groups, machines, templates) are parsed from the
control plane's JSON representation into immutable-ish dataclasses. The
orchestrator never mutates them; every wait returns a fresh snapshot.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from vcloud.timestamps import parse_optional_timestamp


# =============================================================================
# Tasks
# =============================================================================


class TaskStatus(Enum):
    """Remote task status values."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

    @classmethod
    def from_wire(cls, value: Optional[str]) -> "TaskStatus":
        """Map a wire status onto the four-state model.

        ``preRunning`` is still waiting to start, so it folds into QUEUED.
        Anything else the control plane reports (``aborted``, ``canceled``,
        statuses newer than this client) has ended, so it folds into ERROR.
        """
        normalized = (value or "").strip().lower()
        if normalized == "prerunning":
            return cls.QUEUED
        try:
            return cls(normalized)
        except ValueError:
            return cls.ERROR


ACTIVE_TASK_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING})


@dataclass(frozen=True)
class AsyncTask:
    """Reference to a remote long-running operation."""

    href: str
    status: TaskStatus
    operation: str = ""
    error_message: Optional[str] = None
    start_time: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TASK_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "AsyncTask":
        error = data.get("error") or {}
        status = TaskStatus.from_wire(data.get("status"))
        message = error.get("message") if isinstance(error, dict) else str(error)
        if status == TaskStatus.ERROR and not message:
            wire_status = data.get("status")
            if (wire_status or "").lower() == "canceled":
                message = f"Task {data.get('operationName', '')} canceled"
            else:
                message = f"Task {data.get('operationName', '')} ended with status {wire_status}"
        return cls(
            href=data.get("href", ""),
            status=status,
            operation=data.get("operationName") or data.get("operation") or "",
            error_message=message or None,
            start_time=parse_optional_timestamp(data.get("startTime")),
        )


# =============================================================================
# Resources
# =============================================================================


class ResourceStatus(IntEnum):
    """Numeric resource status codes reported by the control plane."""

    FAILED_CREATION = -1
    UNRESOLVED = 0
    RESOLVED = 1
    DEPLOYED = 2
    SUSPENDED = 3
    POWERED_ON = 4
    WAITING_FOR_INPUT = 5
    UNKNOWN = 6
    UNRECOGNIZED = 7
    POWERED_OFF = 8
    INCONSISTENT_STATE = 9
    MIXED = 10

    @classmethod
    def from_wire(cls, value: Any) -> "ResourceStatus":
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.UNRECOGNIZED


class ResourceKind(Enum):
    """What a managed resource is."""

    GROUP = "vApp"
    MACHINE = "vm"
    TEMPLATE = "vAppTemplate"

    @classmethod
    def detect(cls, media_type: str, href: str) -> "ResourceKind":
        """Work out the kind from the media type, falling back to the href path."""
        media_type = media_type or ""
        if "vAppTemplate+" in media_type or "/vAppTemplate/" in href:
            return cls.TEMPLATE
        if ".vm+" in media_type or "/vApp/vm-" in href:
            return cls.MACHINE
        return cls.GROUP


class IpAllocationMode(Enum):
    POOL = "POOL"
    DHCP = "DHCP"
    MANUAL = "MANUAL"
    NONE = "NONE"


@dataclass(frozen=True)
class NetworkConnection:
    """One NIC binding of a machine to a network."""

    network: str
    index: int = 0
    connected: bool = True
    allocation_mode: IpAllocationMode = IpAllocationMode.POOL
    ip_address: Optional[str] = None
    external_ip_address: Optional[str] = None
    mac_address: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "network": self.network,
            "networkConnectionIndex": self.index,
            "isConnected": self.connected,
            "ipAddressAllocationMode": self.allocation_mode.value,
        }
        if self.ip_address:
            payload["ipAddress"] = self.ip_address
        if self.mac_address:
            payload["macAddress"] = self.mac_address
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "NetworkConnection":
        mode = data.get("ipAddressAllocationMode") or "NONE"
        try:
            allocation = IpAllocationMode(mode.upper())
        except ValueError:
            allocation = IpAllocationMode.NONE
        return cls(
            network=data.get("network", ""),
            index=int(data.get("networkConnectionIndex", 0) or 0),
            connected=bool(data.get("isConnected", False)),
            allocation_mode=allocation,
            ip_address=data.get("ipAddress"),
            external_ip_address=data.get("externalIpAddress"),
            mac_address=data.get("macAddress"),
        )


# Virtual hardware resource types (CIM RASD)
RESOURCE_TYPE_PROCESSOR = 3
RESOURCE_TYPE_MEMORY = 4


def _find_link(links: List[Dict[str, Any]], rel: str, type_fragment: str) -> Optional[str]:
    for link in links or []:
        if link.get("rel") == rel and type_fragment in (link.get("type") or ""):
            return link.get("href")
    return None


def _sections(data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Index OVF sections by their type name without the ``Type`` suffix."""
    indexed = {}
    for section in data.get("section") or []:
        name = (section.get("_type") or "").replace("Type", "")
        if name:
            indexed[name] = section
    return indexed


@dataclass
class ManagedResource:
    """A machine, a deployable group of machines, or a captured template."""

    href: str
    name: str
    kind: ResourceKind
    status: ResourceStatus
    description: str = ""
    tasks: List[AsyncTask] = field(default_factory=list)
    children: List["ManagedResource"] = field(default_factory=list)
    parent_href: Optional[str] = None
    vdc_href: Optional[str] = None
    network_connections: List[NetworkConnection] = field(default_factory=list)
    primary_connection_index: Optional[int] = None
    cpu_count: Optional[int] = None
    memory_mb: Optional[int] = None
    computer_name: Optional[str] = None
    os_type: Optional[str] = None

    @property
    def is_powered_on(self) -> bool:
        return self.status == ResourceStatus.POWERED_ON

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ManagedResource":
        href = data.get("href", "")
        kind = ResourceKind.detect(data.get("type", ""), href)
        links = data.get("link") or []
        sections = _sections(data)

        tasks = [AsyncTask.from_payload(t) for t in (data.get("tasks") or {}).get("task") or []]
        children_block = data.get("children") or {}
        children = [cls.from_payload(vm) for vm in children_block.get("vm") or []]

        network_section = sections.get("NetworkConnectionSection") or {}
        connections = [
            NetworkConnection.from_payload(c)
            for c in network_section.get("networkConnection") or []
        ]

        cpu_count = memory_mb = None
        for item in (sections.get("VirtualHardwareSection") or {}).get("item") or []:
            resource_type = item.get("resourceType")
            quantity = item.get("virtualQuantity")
            if quantity is None:
                continue
            if resource_type == RESOURCE_TYPE_PROCESSOR:
                cpu_count = int(quantity)
            elif resource_type == RESOURCE_TYPE_MEMORY:
                memory_mb = int(quantity)

        return cls(
            href=href,
            name=data.get("name", ""),
            kind=kind,
            status=ResourceStatus.from_wire(data.get("status")),
            description=data.get("description") or "",
            tasks=tasks,
            children=children,
            parent_href=_find_link(links, "up", "vApp+"),
            vdc_href=_find_link(links, "up", "vdc+"),
            network_connections=connections,
            primary_connection_index=network_section.get("primaryNetworkConnectionIndex"),
            cpu_count=cpu_count,
            memory_mb=memory_mb,
            computer_name=(sections.get("GuestCustomizationSection") or {}).get("computerName"),
            os_type=(sections.get("OperatingSystemSection") or {}).get("osType"),
        )


# =============================================================================
# Workflow Inputs
# =============================================================================


@dataclass(frozen=True)
class ProvisioningRequest:
    """Everything needed to launch one machine from a template."""

    template_id: str
    name: str
    product_id: str
    description: str = ""
    network_id: Optional[str] = None
    datacenter_id: Optional[str] = None


@dataclass(frozen=True)
class ComputeShape:
    """A CPU/RAM combination offered to callers."""

    product_id: str
    name: str
    cpu_count: int
    ram_mb: int
    disk_gb: int = 4


# =============================================================================
# Generic Records (returned to callers)
# =============================================================================


class MachineState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    TERMINATED = "terminated"


@dataclass
class MachineRecord:
    machine_id: str
    name: str
    description: str
    state: MachineState
    group_id: Optional[str] = None
    datacenter_id: Optional[str] = None
    image_id: Optional[str] = None
    network_id: Optional[str] = None
    product: Optional[ComputeShape] = None
    private_ips: List[str] = field(default_factory=list)
    public_ips: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    last_boot_at: Optional[datetime] = None
    last_pause_at: Optional[datetime] = None


@dataclass
class ImageRecord:
    image_id: str
    name: str
    description: str
    owner: str = ""
    architecture: str = "i32"
    platform: str = "unknown"


@dataclass(frozen=True)
class NetworkRecord:
    network_id: str
    name: str
    href: str


@dataclass(frozen=True)
class CatalogRecord:
    href: str
    name: str
    published: bool
