"""
Translation of control-plane resources into generic machine and image records.

Pure mapping; the only inputs beyond the resource are the values the
caller already fetched (locator, known networks, compute shapes).
"""

import ipaddress
import logging
from typing import Iterable, List, Optional

from vcloud.locator import ResourceLocator
from vcloud.models import (
    ImageRecord,
    MachineRecord,
    MachineState,
    ManagedResource,
    NetworkRecord,
    ResourceStatus,
)
from vcloud.products import ComputeShapeCatalog, make_shape

logger = logging.getLogger(__name__)

DEFAULT_RAM_MB = 256
DEFAULT_CPU_COUNT = 1

_PLATFORM_HINTS = [
    ("windows", "windows"),
    ("ubuntu", "ubuntu"),
    ("debian", "debian"),
    ("centos", "centos"),
    ("red hat", "rhel"),
    ("rhel", "rhel"),
    ("fedora", "fedora"),
    ("suse", "suse"),
    ("freebsd", "freebsd"),
    ("solaris", "solaris"),
    ("linux", "unix"),
]


def is_public_ip(address: str) -> bool:
    """Anything outside 10/8, 192.168/16 and 172.16/12 counts as public."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return True
    if ip.version != 4:
        return not ip.is_private
    return not any(
        ip in ipaddress.ip_network(block)
        for block in ("10.0.0.0/8", "192.168.0.0/16", "172.16.0.0/12")
    )


def machine_state(status: ResourceStatus) -> MachineState:
    if status == ResourceStatus.POWERED_ON:
        return MachineState.RUNNING
    if status in (ResourceStatus.POWERED_OFF, ResourceStatus.SUSPENDED):
        return MachineState.PAUSED
    if status == ResourceStatus.FAILED_CREATION:
        return MachineState.TERMINATED
    return MachineState.PENDING


def guess_platform(text: str) -> str:
    lowered = (text or "").lower()
    for hint, platform in _PLATFORM_HINTS:
        if hint in lowered:
            return platform
    return "unknown"


def guess_architecture(text: str) -> str:
    if "amd64" in text or "64-bit" in text:
        return "i64"
    return "i32"


# =============================================================================
# Machines
# =============================================================================


def to_machine_record(
    machine: ManagedResource,
    group: ManagedResource,
    locator: ResourceLocator,
    shapes: ComputeShapeCatalog,
    networks: Iterable[NetworkRecord] = (),
) -> MachineRecord:
    """Map one machine (with its group) onto a MachineRecord."""
    machine_id = locator.to_id(machine.href)
    name = machine.name or group.name or machine_id
    description = machine.description or group.description or name

    ram = machine.memory_mb or DEFAULT_RAM_MB
    cpus = machine.cpu_count or DEFAULT_CPU_COUNT
    product = shapes.get(f"{ram}:{cpus}")
    if product is None:
        product = make_shape(ram, cpus)

    state = machine_state(machine.status)
    if state == MachineState.PENDING and machine.status not in (
        ResourceStatus.UNRESOLVED, ResourceStatus.RESOLVED, ResourceStatus.DEPLOYED
    ):
        logger.warning(f"Unknown machine status {machine.status.name} for {machine.href}")

    private_ips: List[str] = []
    public_ips: List[str] = []
    external_ip = None
    network_id = None
    known = {n.name.lower(): n for n in networks}

    for connection in machine.network_connections:
        if machine.primary_connection_index is not None and \
                connection.index != machine.primary_connection_index:
            continue
        match = known.get((connection.network or "").lower())
        if match:
            network_id = match.network_id
        if connection.external_ip_address:
            external_ip = connection.external_ip_address
        if connection.ip_address:
            if is_public_ip(connection.ip_address):
                public_ips.append(connection.ip_address)
            else:
                private_ips.append(connection.ip_address)

    # Groups launched here carry their source template id as description
    image_id = group.description if group.description.startswith("/vAppTemplate") else None

    created = last_boot = last_pause = None
    for task in machine.tasks:
        if task.start_time is None:
            continue
        text = task.operation.lower()
        if "deploy" in text and (last_boot is None or task.start_time > last_boot):
            last_boot = task.start_time
        if "poweroff" in text and (last_pause is None or task.start_time > last_pause):
            last_pause = task.start_time
        if created is None or task.start_time < created:
            created = task.start_time

    return MachineRecord(
        machine_id=machine_id,
        name=name,
        description=description,
        state=state,
        group_id=locator.to_id(group.href),
        datacenter_id=locator.to_id(group.vdc_href) if group.vdc_href else None,
        image_id=image_id,
        network_id=network_id,
        product=product,
        private_ips=private_ips,
        public_ips=[external_ip] if external_ip else public_ips,
        created_at=created,
        last_boot_at=last_boot,
        last_pause_at=last_pause,
    )


def to_machine_records(
    group: ManagedResource,
    locator: ResourceLocator,
    shapes: ComputeShapeCatalog,
    networks: Iterable[NetworkRecord] = (),
) -> List[MachineRecord]:
    networks = list(networks)
    return [
        to_machine_record(machine, group, locator, shapes, networks)
        for machine in group.children
    ]


# =============================================================================
# Images
# =============================================================================


def to_image_record(template: ManagedResource, locator: ResourceLocator, owner: str = "") -> ImageRecord:
    image_id = locator.to_id(template.href)
    text = f"{template.name} {template.description}"

    os_type = template.os_type
    if os_type is None:
        os_type = next((c.os_type for c in template.children if c.os_type), None)

    return ImageRecord(
        image_id=image_id,
        name=template.name or image_id,
        description=template.description or template.name or image_id,
        owner=owner,
        architecture=guess_architecture(text),
        platform=guess_platform(os_type or text),
    )
