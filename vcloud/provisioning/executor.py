"""
Workflow execution against the control plane.

Sequences launch, capture-image and terminate as "submit, poll task, wait
for idle, next step", with job tracking, compensation on failure, and a
finalization phase for image capture. Capture runs in a background thread
and reports through a CompletionToken.
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from config.settings import PollingSettings, get_settings
from vcloud.client import ControlPlane, OperationKind, UndeployPowerAction, VCloudClient
from vcloud.errors import (
    AuthorizationError,
    CloudError,
    NotFoundError,
    OperationError,
    RetryExhaustedError,
    SpuriousRejectionError,
    WorkflowCancelledError,
    describe_error,
)
from vcloud.models import (
    CatalogRecord,
    ComputeShape,
    ImageRecord,
    IpAllocationMode,
    MachineRecord,
    ManagedResource,
    NetworkConnection,
    NetworkRecord,
    ProvisioningRequest,
    ResourceKind,
    ResourceStatus,
)
from vcloud.naming import machine_hostnames, normalize_name
from vcloud.products import ComputeShapeCatalog
from vcloud.provisioning.compensation import CompensationStack, FinalizationReport, WorkflowStep
from vcloud.provisioning.state import (
    CompletionToken,
    JobStatus,
    WorkflowJob,
    WorkflowKind,
    WorkflowStateManager,
)
from vcloud.translate import to_image_record, to_machine_record, to_machine_records
from vcloud.waiters import Waiter

logger = logging.getLogger(__name__)

# Child id -> connections as they were before capture
NetworkBindingSnapshot = Dict[str, List[NetworkConnection]]


class WorkflowOrchestrator:
    """
    Runs lifecycle workflows against the control plane.

    Each workflow holds one client session for its whole run; task
    re-fetches open their own short-lived sessions through the same
    factory.

    Usage:
        orchestrator = WorkflowOrchestrator()
        machine = orchestrator.launch(ProvisioningRequest(
            template_id="/vAppTemplate/vappTemplate-7",
            name="web 1",
            product_id="2048:2",
        ))
        token = orchestrator.capture_image(machine.machine_id, "web-golden", "Web tier image")
        image_id = token.result()
        orchestrator.terminate(machine.machine_id)
    """

    def __init__(
        self,
        client_factory: Optional[Callable[[], ControlPlane]] = None,
        state_manager: Optional[WorkflowStateManager] = None,
        shapes: Optional[ComputeShapeCatalog] = None,
        polling: Optional[PollingSettings] = None,
    ):
        self.client_factory = client_factory or VCloudClient
        self.state_manager = state_manager or WorkflowStateManager()
        self.shapes = shapes or ComputeShapeCatalog.from_settings()
        self.polling = polling or get_settings().polling
        self._active_threads: Dict[str, threading.Thread] = {}
        self._tokens: Dict[str, CompletionToken] = {}

    @classmethod
    def from_settings(cls, settings=None) -> "WorkflowOrchestrator":
        """
        Build an orchestrator from application settings.

        With a state file configured, jobs a previous process left unfinished
        past the stale timeout are failed on startup.
        """
        settings = settings or get_settings()
        state_manager = WorkflowStateManager(
            state_file=settings.state_path, max_history=settings.job_history
        )
        if settings.state_path:
            stale = state_manager.cleanup_stale_jobs()
            if stale:
                logger.warning(f"Failed {len(stale)} stale job(s) from {settings.state_path}")
        return cls(
            client_factory=lambda: VCloudClient(settings=settings.vcloud),
            state_manager=state_manager,
            shapes=ComputeShapeCatalog.from_settings(settings.products),
            polling=settings.polling,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _waiter(
        self,
        client: ControlPlane,
        correlation_id: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Waiter:
        return Waiter(client, self.client_factory, self.polling, cancel_event, correlation_id)

    def _update_step(self, job_id: str, step: str) -> None:
        """Update job to current step."""
        job = self.state_manager.get_job(job_id)
        if job:
            logger.info(f"[{job.correlation_id}] Step: {step}")
        self.state_manager.update_job(job_id, step=step)

    def _record_failure(self, job: WorkflowJob, error: BaseException, operation: str) -> None:
        details = describe_error(error, operation, correlation_id=job.correlation_id)
        if isinstance(error, WorkflowCancelledError):
            self.state_manager.cancel_job(job.job_id)
            return
        self.state_manager.fail_job(job.job_id, details["error"], details.get("error_id", ""))
        current = self.state_manager.get_job(job.job_id)
        if current and current.compensation_log:
            self.state_manager.mark_rolled_back(job.job_id)

    def _require_machine(self, client: ControlPlane, machine_id: str, correlation_id: str) -> ManagedResource:
        vm = client.fetch_resource(client.locator.to_href(machine_id), correlation_id)
        if vm is None:
            raise NotFoundError(f"No such machine: {machine_id}")
        return vm

    def _parent_of(self, client: ControlPlane, vm: ManagedResource, correlation_id: str) -> Optional[ManagedResource]:
        if not vm.parent_href:
            return None
        return client.fetch_resource(vm.parent_href, correlation_id)

    def _datacenter_for(
        self,
        client: ControlPlane,
        correlation_id: str,
        datacenter_id: Optional[str] = None,
        hint: Optional[ManagedResource] = None,
    ) -> str:
        if datacenter_id:
            return client.locator.to_href(datacenter_id)
        if hint is not None and hint.vdc_href:
            return hint.vdc_href
        datacenters = client.list_datacenters(correlation_id)
        if not datacenters:
            raise NotFoundError("No datacenter is available to this organization")
        return datacenters[0]

    def _submit_and_wait(
        self,
        client: ControlPlane,
        waiter: Waiter,
        kind: OperationKind,
        resource: ManagedResource,
        params: Optional[dict] = None,
    ) -> Optional[ManagedResource]:
        """Submit one mutation, poll its task, then return the idle snapshot."""
        task = client.submit_operation(kind, resource.href, params, waiter.correlation_id)
        waiter.wait_for_task(task)
        return waiter.wait_for_idle(resource)

    # =========================================================================
    # Launch
    # =========================================================================

    def launch(
        self,
        request: ProvisioningRequest,
        correlation_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> MachineRecord:
        """
        Provision a machine from a template and power it on.

        Returns:
            The first machine of the new group

        Raises:
            NotFoundError: Unknown template, product, network or datacenter
            OperationError: A remote task failed (the group is removed again)
        """
        job = self.state_manager.create_job(WorkflowKind.LAUNCH, request.template_id, correlation_id)
        cid = job.correlation_id
        stack = CompensationStack(cid)

        try:
            with self.client_factory() as client:
                waiter = self._waiter(client, cid, cancel_event)
                try:
                    self.state_manager.update_job(job.job_id, status=JobStatus.RUNNING)
                    machine = self._run_launch(client, waiter, job, request, stack)
                except Exception:
                    for record in stack.unwind():
                        self.state_manager.add_compensation_record(job.job_id, record)
                    raise
        except Exception as e:
            self._record_failure(job, e, "launch machine")
            raise

        self.state_manager.complete_job(job.job_id, result=machine.machine_id)
        logger.info(f"[{cid}] Launched {machine.machine_id} from {request.template_id}")
        return machine

    def _run_launch(
        self,
        client: ControlPlane,
        waiter: Waiter,
        job: WorkflowJob,
        request: ProvisioningRequest,
        stack: CompensationStack,
    ) -> MachineRecord:
        cid = job.correlation_id

        self._update_step(job.job_id, "resolve_template")
        template = client.fetch_resource(client.locator.to_href(request.template_id), cid)
        if template is None:
            raise NotFoundError(f"No such template: {request.template_id}")
        for source in [template] + template.children:
            for connection in source.network_connections:
                logger.debug(
                    f"[{cid}] Template connection {connection.index} on {connection.network}: "
                    f"{connection.allocation_mode.value}"
                )

        shape = self.shapes.get(request.product_id)
        if shape is None:
            raise NotFoundError(f"No such product: {request.product_id}")

        requested_network = None
        if request.network_id:
            requested_network = client.get_network(client.locator.to_href(request.network_id), cid)
            if requested_network is None:
                raise NotFoundError(f"No such network: {request.network_id}")

        vdc_href = self._datacenter_for(client, cid, request.datacenter_id, template)
        name = normalize_name(request.name)

        self._update_step(job.job_id, "instantiate")

        def instantiate() -> ManagedResource:
            # The template id rides along as description so records can report their image
            group = client.instantiate_template(
                vdc_href,
                template.href,
                name,
                description=request.template_id,
                network_name=requested_network.name if requested_network else None,
                correlation_id=cid,
            )
            if group is None:
                raise OperationError(f"No group was instantiated for {request.template_id}")
            return group

        group = stack.run(WorkflowStep(
            "instantiate",
            instantiate,
            compensate=lambda created: self._remove_group(client, created.href, cid),
        ))

        self._update_step(job.job_id, "wait_for_materialization")
        group = waiter.wait_while_unresolved(group)
        group = waiter.wait_for_idle(group)
        if group is None:
            raise OperationError(f"Group {name} disappeared after instantiation")

        self._update_step(job.job_id, "customize_guests")
        hostnames = machine_hostnames(request.name, len(group.children))
        for child, hostname in zip(group.children, hostnames):
            child = waiter.wait_for_idle(child)
            if child is None:
                raise OperationError(f"Machine disappeared from group {name}")
            self._submit_and_wait(
                client, waiter, OperationKind.EDIT_GUEST_CUSTOMIZATION, child,
                {"enabled": True, "computer_name": hostname, "info": name},
            )

        self._update_step(job.job_id, "select_network")
        group = waiter.wait_for_idle(group)
        if group is None:
            raise OperationError(f"Group {name} disappeared during customization")
        network = requested_network or self._first_network(client, cid)

        self._update_step(job.job_id, "configure_machines")
        for child in group.children:
            self._configure_machine(client, waiter, child, network, shape)

        self._update_step(job.job_id, "deploy")
        group = waiter.wait_for_idle(group)
        if group is None or not group.children:
            raise OperationError(f"No machines were created in group {name}")
        group = self._submit_and_wait(client, waiter, OperationKind.DEPLOY, group, {"power_on": True})
        if group is None:
            raise OperationError(f"Group {name} disappeared during deploy")

        machines = to_machine_records(group, client.locator, self.shapes, client.list_networks(cid))
        return machines[0]

    def _first_network(self, client: ControlPlane, correlation_id: str) -> NetworkRecord:
        networks = client.list_networks(correlation_id)
        if not networks:
            raise NotFoundError("No network is available to this organization")
        return networks[0]

    def _configure_machine(
        self,
        client: ControlPlane,
        waiter: Waiter,
        machine: ManagedResource,
        network: NetworkRecord,
        shape: ComputeShape,
    ) -> None:
        cid = waiter.correlation_id
        machine = waiter.wait_for_idle(machine)
        if machine is None:
            raise OperationError("Machine disappeared before configuration")

        logger.info(f"[{cid}] Binding {machine.name} to {network.name} as {shape.name}")
        machine = self._submit_and_wait(
            client, waiter, OperationKind.EDIT_NETWORK_CONNECTIONS, machine, {"connections": []}
        )
        connection = NetworkConnection(
            network=network.name,
            index=0,
            connected=True,
            allocation_mode=IpAllocationMode.POOL,
        )
        machine = self._submit_and_wait(
            client, waiter, OperationKind.EDIT_NETWORK_CONNECTIONS, machine,
            {"connections": [connection], "primary_index": 0},
        )
        machine = self._submit_and_wait(
            client, waiter, OperationKind.EDIT_CPU, machine, {"cpu_count": shape.cpu_count}
        )
        self._submit_and_wait(
            client, waiter, OperationKind.EDIT_MEMORY, machine, {"memory_mb": shape.ram_mb}
        )

    def _remove_group(self, client: ControlPlane, href: str, correlation_id: str) -> None:
        """Compensation for a launch: undeploy (best effort) and delete the group."""
        # Runs after a failure, possibly a cancellation, so it gets its own waiter
        waiter = self._waiter(client, correlation_id)
        group = waiter.wait_for_idle(client.fetch_resource(href, correlation_id))
        if group is None:
            return

        if group.status in (ResourceStatus.DEPLOYED, ResourceStatus.POWERED_ON, ResourceStatus.MIXED):
            try:
                group = self._submit_and_wait(
                    client, waiter, OperationKind.UNDEPLOY, group,
                    {"power_action": UndeployPowerAction.POWER_OFF},
                )
            except CloudError as e:
                logger.warning(f"[{correlation_id}] Undeploy of {href} failed, deleting anyway: {e}")
                group = waiter.wait_for_idle(group)
            if group is None:
                return

        self._delete_group(client, waiter, group)

    # =========================================================================
    # Capture Image
    # =========================================================================

    def capture_image(
        self,
        machine_id: str,
        name: str,
        description: str,
        correlation_id: Optional[str] = None,
    ) -> CompletionToken:
        """
        Capture a machine's group as a template in the background.

        The source group is powered off and undeployed for the capture and
        always brought back with its original network bindings.

        Returns:
            Token resolving to the new image id, or to the capture's error
        """
        job = self.state_manager.create_job(WorkflowKind.CAPTURE, machine_id, correlation_id)
        cancel_event = threading.Event()
        token = CompletionToken(job.job_id, cancel_event)
        self._tokens[job.job_id] = token

        thread = threading.Thread(
            target=self._run_capture,
            args=(job.job_id, machine_id, name, description, token, cancel_event),
            name=f"Image {machine_id} - {name}",
            daemon=True,
        )
        self._active_threads[job.job_id] = thread
        thread.start()
        return token

    def _run_capture(
        self,
        job_id: str,
        machine_id: str,
        name: str,
        description: str,
        token: CompletionToken,
        cancel_event: threading.Event,
    ) -> None:
        """Thread body: run the capture and resolve the token."""
        job = self.state_manager.get_job(job_id)
        if not job:
            logger.error(f"Job {job_id} not found")
            token.set_error(NotFoundError(f"Job {job_id} not found"))
            return

        error: Optional[BaseException] = None
        image_id = None
        try:
            with self.client_factory() as client:
                waiter = self._waiter(client, job.correlation_id, cancel_event)
                self.state_manager.update_job(job_id, status=JobStatus.RUNNING)
                image_id = self._capture(client, waiter, job, token, machine_id, name, description)
        except Exception as e:
            error = e
            self._record_failure(job, e, "capture image")
        else:
            self.state_manager.complete_job(job_id, result=image_id)
            logger.info(f"[{job.correlation_id}] Captured {machine_id} as {image_id}")
        finally:
            self._active_threads.pop(job_id, None)
            self._tokens.pop(job_id, None)

        # Released before resolving, so token waiters never see a running job
        if error is not None:
            token.set_error(error)
        else:
            token.set_result(image_id)

    def _capture(
        self,
        client: ControlPlane,
        waiter: Waiter,
        job: WorkflowJob,
        token: CompletionToken,
        machine_id: str,
        name: str,
        description: str,
    ) -> str:
        cid = job.correlation_id

        self._update_step(job.job_id, "resolve_machine")
        vm = self._require_machine(client, machine_id, cid)
        parent = self._parent_of(client, vm, cid)
        if parent is None:
            raise NotFoundError(f"No group found for machine {machine_id}")

        self._update_step(job.job_id, "power_off")
        if parent.is_powered_on:
            waiter.wait_for_task(client.submit_operation(OperationKind.POWER_OFF, parent.href, None, cid))

        self._update_step(job.job_id, "undeploy")
        waiter.wait_for_task(client.submit_operation(
            OperationKind.UNDEPLOY, parent.href, {"power_action": UndeployPowerAction.SUSPEND}, cid
        ))

        self._update_step(job.job_id, "snapshot_networks")
        snapshot = self._snapshot_networks(client, parent, cid)
        parent = waiter.wait_for_idle(parent)
        if parent is None:
            raise NotFoundError(f"Group of machine {machine_id} disappeared during capture")

        self._update_step(job.job_id, "capture")
        logger.info(f"[{cid}] Building template from {vm.name}")
        template = None
        capture_error = None
        try:
            template = self._capture_template(client, waiter, job, parent, name, description)
        except Exception as e:
            capture_error = e

        report = self._finalize_capture(client, parent, snapshot, cid)
        token.finalization_errors.extend(f"{e['step']}: {e['error']}" for e in report.errors)
        for record in report.records():
            self.state_manager.add_compensation_record(job.job_id, record)

        if capture_error is not None:
            raise capture_error

        self._update_step(job.job_id, "finalize")
        template = client.fetch_resource(template.href, cid)
        if template is None:
            raise NotFoundError(f"Captured template for {machine_id} is no longer visible")
        image = to_image_record(template, client.locator, client.org_name(cid))
        return image.image_id

    def _snapshot_networks(
        self, client: ControlPlane, parent: ManagedResource, correlation_id: str
    ) -> NetworkBindingSnapshot:
        snapshot: NetworkBindingSnapshot = {}
        for child in parent.children:
            child_id = client.locator.to_id(child.href)
            snapshot[child_id] = list(client.get_network_connections(child.href, correlation_id))
            logger.debug(
                f"[{correlation_id}] Saved {len(snapshot[child_id])} network connections for {child_id}"
            )
        return snapshot

    def _find_catalog(self, client: ControlPlane, correlation_id: str) -> Optional[CatalogRecord]:
        """The first private catalog, where captured templates are registered."""
        for catalog in client.list_catalogs(correlation_id):
            if not catalog.published:
                return catalog
        return None

    def _capture_template(
        self,
        client: ControlPlane,
        waiter: Waiter,
        job: WorkflowJob,
        parent: ManagedResource,
        name: str,
        description: str,
    ) -> ManagedResource:
        cid = job.correlation_id
        vdc_href = self._datacenter_for(client, cid, hint=parent)
        template = client.capture_group(vdc_href, parent.href, normalize_name(name), description, cid)
        for task in template.tasks:
            waiter.wait_for_task(task)

        self._update_step(job.job_id, "register_catalog_item")
        catalog = self._find_catalog(client, cid)
        if catalog is None:
            logger.warning(f"[{cid}] No catalog exists for template {template.name}")
            return template

        logger.info(f"[{cid}] Adding {template.name} to catalog {catalog.name}")
        waiter.wait_for_task(client.add_catalog_item(catalog.href, name, description, template.href, cid))
        return template

    def _finalize_capture(
        self,
        client: ControlPlane,
        parent: ManagedResource,
        snapshot: NetworkBindingSnapshot,
        correlation_id: str,
    ) -> FinalizationReport:
        """Restore network bindings and power the source group back on. Never raises."""
        # Cancellation of the capture must not stop the source from coming back
        waiter = self._waiter(client, correlation_id)
        report = FinalizationReport(correlation_id)
        logger.info(f"[{correlation_id}] Turning source group {parent.name} back on")

        current = report.attempt(
            "wait_for_idle_before_restore", lambda: waiter.wait_for_idle(parent), default=parent
        )
        if current is None:
            report.errors.append(
                {"step": "wait_for_idle_before_restore", "error": f"{parent.href} no longer exists"}
            )
            return report

        for child in current.children:
            child_id = client.locator.to_id(child.href)
            connections = snapshot.pop(child_id, None)
            if connections is None:
                logger.warning(f"[{correlation_id}] No saved network connections for {child_id}")
                continue
            report.attempt(
                f"restore_network {child_id}",
                lambda c=child, saved=connections: self._restore_connections(client, waiter, c, saved),
            )

        current = report.attempt(
            "wait_for_idle_before_deploy", lambda: waiter.wait_for_idle(current), default=current
        )
        report.attempt(
            "deploy",
            lambda: waiter.wait_for_task(client.submit_operation(
                OperationKind.DEPLOY, parent.href, {"power_on": True}, correlation_id
            )),
        )
        snapshot.clear()
        return report

    def _restore_connections(
        self,
        client: ControlPlane,
        waiter: Waiter,
        machine: ManagedResource,
        saved: List[NetworkConnection],
    ) -> None:
        machine = waiter.wait_for_idle(machine)
        if machine is None:
            raise NotFoundError("Machine disappeared before its network could be restored")

        restored = [replace(connection, connected=True) for connection in saved]
        params = {"connections": restored}
        if machine.primary_connection_index is not None:
            params["primary_index"] = machine.primary_connection_index
        logger.info(f"[{waiter.correlation_id}] Resetting network connections for {machine.name}")
        self._submit_and_wait(client, waiter, OperationKind.EDIT_NETWORK_CONNECTIONS, machine, params)

    # =========================================================================
    # Terminate
    # =========================================================================

    def terminate(
        self,
        machine_id: str,
        correlation_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Decommission a machine, and its group once no member is running.

        Raises:
            NotFoundError: The machine does not exist
            RetryExhaustedError: Group deletion kept being rejected
        """
        job = self.state_manager.create_job(WorkflowKind.TERMINATE, machine_id, correlation_id)

        try:
            with self.client_factory() as client:
                waiter = self._waiter(client, job.correlation_id, cancel_event)
                self.state_manager.update_job(job.job_id, status=JobStatus.RUNNING)
                self._run_terminate(client, waiter, job, machine_id)
        except Exception as e:
            self._record_failure(job, e, "terminate machine")
            raise

        self.state_manager.complete_job(job.job_id, result=machine_id)

    def _run_terminate(self, client: ControlPlane, waiter: Waiter, job: WorkflowJob, machine_id: str) -> None:
        cid = job.correlation_id

        self._update_step(job.job_id, "resolve_machine")
        vm = self._require_machine(client, machine_id, cid)
        parent = self._parent_of(client, vm, cid)

        if parent is not None and parent.kind == ResourceKind.GROUP:
            self._terminate_in_group(client, waiter, job, vm, parent)
        else:
            self._terminate_standalone(client, waiter, job, vm)

    def _power_off(self, client: ControlPlane, waiter: Waiter, machine: ManagedResource) -> None:
        machine = waiter.wait_for_idle(machine)
        if machine is None:
            return
        waiter.wait_for_task(
            client.submit_operation(OperationKind.POWER_OFF, machine.href, None, waiter.correlation_id)
        )

    def _terminate_in_group(
        self,
        client: ControlPlane,
        waiter: Waiter,
        job: WorkflowJob,
        vm: ManagedResource,
        parent: ManagedResource,
    ) -> None:
        cid = job.correlation_id

        self._update_step(job.job_id, "power_off")
        parent = waiter.wait_for_idle(parent)
        vm = client.fetch_resource(vm.href, cid)
        if vm is None:
            logger.info(f"[{cid}] Machine disappeared before power off")
            return
        if vm.is_powered_on:
            self._power_off(client, waiter, vm)
        waiter.wait_for_idle(vm)

        parent = client.fetch_resource(parent.href, cid) if parent else None
        if parent is None:
            logger.info(f"[{cid}] Group disappeared, nothing left to remove")
            return

        running = sum(1 for child in parent.children if child.is_powered_on)
        if running:
            logger.info(f"[{cid}] {running} machines still running in {parent.name}, keeping group")
            return

        self._update_step(job.job_id, "undeploy")
        parent = waiter.wait_for_idle(parent)
        if parent is None:
            return
        try:
            waiter.wait_for_task(client.submit_operation(
                OperationKind.UNDEPLOY, parent.href, {"power_action": UndeployPowerAction.POWER_OFF}, cid
            ))
        except WorkflowCancelledError:
            raise
        except CloudError as e:
            # Some installs reject undeploy of an already stopped group
            logger.warning(f"[{cid}] Ignoring undeploy failure for {parent.name}: {e}")

        parent = waiter.wait_for_idle(parent)
        if parent is None:
            return
        for child in parent.children:
            waiter.wait_for_idle(child)

        self._update_step(job.job_id, "remove_group")
        self._delete_group(client, waiter, parent)

    def _terminate_standalone(
        self,
        client: ControlPlane,
        waiter: Waiter,
        job: WorkflowJob,
        vm: ManagedResource,
    ) -> None:
        cid = job.correlation_id

        self._update_step(job.job_id, "power_off")
        if vm.is_powered_on:
            self._power_off(client, waiter, vm)
        vm = waiter.wait_for_idle(vm)

        self._update_step(job.job_id, "undeploy")
        if vm is not None and vm.status == ResourceStatus.DEPLOYED:
            waiter.wait_for_task(client.submit_operation(
                OperationKind.UNDEPLOY, vm.href, {"power_action": UndeployPowerAction.POWER_OFF}, cid
            ))
            waiter.wait_while_status(vm, ResourceStatus.DEPLOYED)

    def _delete_group(self, client: ControlPlane, waiter: Waiter, group: ManagedResource) -> None:
        """
        Delete a group, retrying while the platform spuriously claims an invalid state.

        Raises:
            RetryExhaustedError: Still rejected after VCLOUD_DELETE_MAX_ATTEMPTS
        """
        cid = waiter.correlation_id
        attempts = self.polling.delete_max_attempts

        def log_retry(retry_state) -> None:
            logger.warning(
                f"[{cid}] Delete of {group.name} rejected "
                f"(attempt {retry_state.attempt_number}/{attempts}), retrying"
            )

        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(self.polling.delete_retry_delay),
            retry=retry_if_exception_type(SpuriousRejectionError),
            sleep=waiter.pause,
            before_sleep=log_retry,
        )
        try:
            retrying(lambda: waiter.wait_for_task(client.delete_resource(group.href, cid)))
        except RetryError as e:
            raise RetryExhaustedError(
                f"Group {group.name} could not be deleted after {attempts} attempts"
            ) from e.last_attempt.exception()

        logger.info(f"[{cid}] Removed group {group.name}")

    # =========================================================================
    # Machine Operations
    # =========================================================================

    def boot(self, machine_id: str, correlation_id: str = "") -> None:
        with self.client_factory() as client:
            vm = self._require_machine(client, machine_id, correlation_id)
            waiter = self._waiter(client, correlation_id)
            waiter.wait_for_task(client.submit_operation(OperationKind.POWER_ON, vm.href, None, correlation_id))

    def pause(self, machine_id: str, correlation_id: str = "") -> None:
        with self.client_factory() as client:
            vm = self._require_machine(client, machine_id, correlation_id)
            waiter = self._waiter(client, correlation_id)
            waiter.wait_for_task(client.submit_operation(OperationKind.POWER_OFF, vm.href, None, correlation_id))

    def reboot(self, machine_id: str, correlation_id: str = "") -> None:
        """Submit a reboot without waiting for it."""
        with self.client_factory() as client:
            vm = self._require_machine(client, machine_id, correlation_id)
            client.submit_operation(OperationKind.REBOOT, vm.href, None, correlation_id)

    def get_machine(self, machine_id: str, correlation_id: str = "") -> Optional[MachineRecord]:
        with self.client_factory() as client:
            vm = client.fetch_resource(client.locator.to_href(machine_id), correlation_id)
            if vm is None or vm.kind != ResourceKind.MACHINE:
                return None
            group = self._parent_of(client, vm, correlation_id) or vm
            networks = client.list_networks(correlation_id)
            return to_machine_record(vm, group, client.locator, self.shapes, networks)

    def list_machines(self, correlation_id: str = "") -> List[MachineRecord]:
        machines: List[MachineRecord] = []
        with self.client_factory() as client:
            networks = client.list_networks(correlation_id)
            for vdc_href in client.list_datacenters(correlation_id):
                for group_href in client.list_groups(vdc_href, correlation_id):
                    group = client.fetch_resource(group_href, correlation_id)
                    if group is not None:
                        machines.extend(to_machine_records(group, client.locator, self.shapes, networks))
        return machines

    def list_products(self) -> List[ComputeShape]:
        return self.shapes.list()

    def get_product(self, product_id: str) -> Optional[ComputeShape]:
        return self.shapes.get(product_id)

    def is_subscribed(self, correlation_id: str = "") -> bool:
        """Whether this account may use compute; permission failures mean no."""
        with self.client_factory() as client:
            try:
                client.list_datacenters(correlation_id)
            except AuthorizationError:
                return False
        return True

    # =========================================================================
    # Image Operations
    # =========================================================================

    def get_image(self, image_id: str, correlation_id: str = "") -> Optional[ImageRecord]:
        with self.client_factory() as client:
            try:
                template = client.fetch_resource(client.locator.to_href(image_id), correlation_id)
            except AuthorizationError:
                return None
            if template is None or template.kind != ResourceKind.TEMPLATE:
                return None
            return to_image_record(template, client.locator, client.org_name(correlation_id))

    def list_images(self, correlation_id: str = "") -> List[ImageRecord]:
        """Templates registered in the organization's private catalogs."""
        images: List[ImageRecord] = []
        with self.client_factory() as client:
            owner = client.org_name(correlation_id)
            for catalog in client.list_catalogs(correlation_id):
                if catalog.published:
                    continue
                for href in client.list_catalog_templates(catalog.href, correlation_id):
                    template = client.fetch_resource(href, correlation_id)
                    if template is not None:
                        images.append(to_image_record(template, client.locator, owner))
        return images

    def remove_image(self, image_id: str, correlation_id: str = "") -> None:
        with self.client_factory() as client:
            waiter = self._waiter(client, correlation_id)
            template = client.fetch_resource(client.locator.to_href(image_id), correlation_id)
            if template is None:
                raise NotFoundError(f"No such image: {image_id}")
            template = waiter.wait_for_idle(template)
            if template is None:
                return
            waiter.wait_for_task(client.delete_resource(template.href, correlation_id))

    def is_image_subscribed(self, correlation_id: str = "") -> bool:
        with self.client_factory() as client:
            try:
                client.list_catalogs(correlation_id)
            except AuthorizationError:
                return False
        return True

    # =========================================================================
    # Jobs
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[WorkflowJob]:
        return self.state_manager.get_job(job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        workflow: Optional[WorkflowKind] = None,
        target: Optional[str] = None,
        limit: int = 50,
    ) -> List[WorkflowJob]:
        """Recent jobs, newest first, optionally filtered by status, workflow or target id."""
        return self.state_manager.list_jobs(status=status, workflow=workflow, target=target, limit=limit)

    def get_active_jobs(self) -> List[WorkflowJob]:
        return self.state_manager.get_active_jobs()

    def get_stats(self) -> Dict[str, Any]:
        """Job counts plus the number of background threads still alive."""
        stats = self.state_manager.get_stats()
        stats["background_threads"] = sum(1 for t in list(self._active_threads.values()) if t.is_alive())
        return stats

    def is_job_running(self, job_id: str) -> bool:
        """Check if a background job's thread is still running."""
        thread = self._active_threads.get(job_id)
        return thread is not None and thread.is_alive()

    def cancel_job(self, job_id: str) -> bool:
        """
        Request cancellation of a background job.

        The job stops at its next poll; a cancelled capture still runs its
        finalization so the source group comes back.
        """
        token = self._tokens.get(job_id)
        if token is None:
            return False
        return token.cancel()


# Global orchestrator instance
_orchestrator: Optional[WorkflowOrchestrator] = None


def get_orchestrator() -> WorkflowOrchestrator:
    """Get or create the global orchestrator, configured from settings."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = WorkflowOrchestrator.from_settings()
    return _orchestrator
