"""
Unit tests for the control-plane REST client.

Tests use mocked responses - no actual vCloud server required.
"""

import json

import pytest
import requests
import responses

from vcloud.client import ApiDialect, OperationKind, UndeployPowerAction, VCloudClient
from vcloud.errors import (
    AuthenticationError,
    AuthorizationError,
    CloudError,
    NotFoundError,
    SpuriousRejectionError,
    TransientObservationError,
)
from vcloud.models import (
    AsyncTask,
    IpAllocationMode,
    NetworkConnection,
    ResourceKind,
    ResourceStatus,
    TaskStatus,
)

API = "https://vcd.example.com/api"
VAPP = f"{API}/vApp/vapp-1"
VM = f"{API}/vApp/vm-1"
TASK = f"{API}/task/t-1"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def client():
    """Create client with test credentials."""
    return VCloudClient(
        endpoint=API,
        username="admin",
        org="acme",
        password="secret",
        api_version="5.1",
    )


@pytest.fixture
def mock_responses():
    """Enable responses mock for HTTP requests."""
    with responses.RequestsMock() as rsps:
        yield rsps


def task_body(status="running", operation="vappPowerOff"):
    return {"href": TASK, "status": status, "operationName": operation, "startTime": "2024-03-01T10:00:00.000Z"}


def vm_body(status=4, tasks=()):
    return {
        "href": VM,
        "name": "web-1",
        "type": "application/vnd.vmware.vcloud.vm+json",
        "status": status,
        "link": [{"rel": "up", "type": "application/vnd.vmware.vcloud.vApp+json", "href": VAPP}],
        "tasks": {"task": list(tasks)},
        "section": [
            {
                "_type": "NetworkConnectionSectionType",
                "primaryNetworkConnectionIndex": 0,
                "networkConnection": [{
                    "network": "tenant-net",
                    "networkConnectionIndex": 0,
                    "isConnected": True,
                    "ipAddressAllocationMode": "POOL",
                    "ipAddress": "10.0.0.5",
                }],
            },
            {
                "_type": "VirtualHardwareSectionType",
                "item": [
                    {"resourceType": 3, "virtualQuantity": 2},
                    {"resourceType": 4, "virtualQuantity": 2048},
                ],
            },
        ],
    }


# =============================================================================
# Authentication Tests
# =============================================================================


class TestAuthentication:
    """Tests for login/logout operations."""

    def test_login_sets_session_token(self, client, mock_responses):
        mock_responses.add(
            responses.POST,
            f"{API}/sessions",
            json={"user": "admin", "org": "acme"},
            headers={"x-vcloud-authorization": "token-123"},
            status=200,
        )

        assert client.login() is True
        assert client.authenticated is True
        assert client.session.headers["x-vcloud-authorization"] == "token-123"
        auth = mock_responses.calls[0].request.headers["Authorization"]
        assert auth.startswith("Basic ")

    def test_login_invalid_credentials(self, client, mock_responses):
        mock_responses.add(responses.POST, f"{API}/sessions", status=401)

        with pytest.raises(AuthenticationError, match="admin@acme"):
            client.login()

        assert client.authenticated is False

    def test_login_connection_error(self, client, mock_responses):
        mock_responses.add(
            responses.POST,
            f"{API}/sessions",
            body=requests.exceptions.ConnectionError("Connection refused"),
        )

        with pytest.raises(TransientObservationError):
            client.login()

    def test_context_manager_logs_out(self, client, mock_responses):
        mock_responses.add(
            responses.POST, f"{API}/sessions", json={},
            headers={"x-vcloud-authorization": "token-123"},
        )
        mock_responses.add(responses.DELETE, f"{API}/session", status=204)

        with client:
            assert client.authenticated

        assert client.authenticated is False
        assert "x-vcloud-authorization" not in client.session.headers

    def test_logout_errors_ignored(self, client, mock_responses):
        client.authenticated = True
        mock_responses.add(responses.DELETE, f"{API}/session", status=500)

        assert client.logout() is True
        assert client.authenticated is False

    def test_accept_header_carries_version(self, client):
        assert client.session.headers["Accept"] == "application/*+json;version=5.1"


# =============================================================================
# Error Mapping Tests
# =============================================================================


class TestErrorMapping:
    @pytest.mark.parametrize("status,error", [
        (401, AuthenticationError),
        (403, AuthorizationError),
        (404, NotFoundError),
        (500, CloudError),
    ])
    def test_status_codes(self, client, mock_responses, status, error):
        mock_responses.add(responses.GET, VM, json={"message": "nope"}, status=status)

        with pytest.raises(error):
            client._request("GET", VM)

    def test_invalid_state_is_spurious_rejection(self, client, mock_responses):
        mock_responses.add(
            responses.DELETE,
            VAPP,
            json={"minorErrorCode": "INVALID_STATE", "message": "vApp is busy"},
            status=400,
        )

        with pytest.raises(SpuriousRejectionError, match="vApp is busy"):
            client.submit_operation(OperationKind.REMOVE, VAPP)

    def test_timeout_is_transient(self, client, mock_responses):
        mock_responses.add(responses.GET, TASK, body=requests.exceptions.Timeout("slow"))

        with pytest.raises(TransientObservationError):
            client.fetch_task(TASK)

    def test_unauthenticated_request_clears_flag(self, client, mock_responses):
        client.authenticated = True
        mock_responses.add(responses.GET, VM, status=401)

        with pytest.raises(AuthenticationError):
            client.fetch_resource(VM)
        assert client.authenticated is False


# =============================================================================
# Resource and Task Tests
# =============================================================================


class TestFetch:
    def test_fetch_resource_parses_machine(self, client, mock_responses):
        mock_responses.add(responses.GET, VM, json=vm_body(tasks=[task_body()]))

        vm = client.fetch_resource(VM)

        assert vm.kind == ResourceKind.MACHINE
        assert vm.status == ResourceStatus.POWERED_ON
        assert vm.parent_href == VAPP
        assert vm.cpu_count == 2
        assert vm.memory_mb == 2048
        assert vm.network_connections[0].allocation_mode == IpAllocationMode.POOL
        assert vm.tasks[0].is_active

    def test_fetch_resource_missing_returns_none(self, client, mock_responses):
        mock_responses.add(responses.GET, VM, status=404)

        assert client.fetch_resource(VM) is None

    def test_fetch_group_with_children(self, client, mock_responses):
        mock_responses.add(responses.GET, VAPP, json={
            "href": VAPP,
            "name": "web",
            "type": "application/vnd.vmware.vcloud.vApp+json",
            "status": 8,
            "link": [{"rel": "up", "type": "application/vnd.vmware.vcloud.vdc+json", "href": f"{API}/vdc/1"}],
            "children": {"vm": [vm_body(status=8, tasks=[task_body(status="queued")])]},
        })

        group = client.fetch_resource(VAPP)

        assert group.kind == ResourceKind.GROUP
        assert group.vdc_href == f"{API}/vdc/1"
        assert group.tasks == []
        assert [t.status for t in client.list_child_tasks(group)] == [TaskStatus.QUEUED]

    def test_fetch_task_maps_status(self, client, mock_responses):
        mock_responses.add(responses.GET, TASK, json={
            "href": TASK, "status": "error", "error": {"message": "Out of disk"},
        })

        task = client.fetch_task(TASK)

        assert task.status == TaskStatus.ERROR
        assert task.error_message == "Out of disk"


class TestTaskStatusMapping:
    @pytest.mark.parametrize("wire,status", [
        ("queued", TaskStatus.QUEUED),
        ("preRunning", TaskStatus.QUEUED),
        ("running", TaskStatus.RUNNING),
        ("success", TaskStatus.SUCCESS),
        ("error", TaskStatus.ERROR),
        ("aborted", TaskStatus.ERROR),
        ("canceled", TaskStatus.ERROR),
        ("somethingNew", TaskStatus.ERROR),
    ])
    def test_from_wire(self, wire, status):
        assert TaskStatus.from_wire(wire) == status

    def test_canceled_task_is_terminal(self):
        task = AsyncTask.from_payload({"href": TASK, "status": "canceled", "operationName": "vappDeploy"})

        assert not task.is_active
        assert task.error_message == "Task vappDeploy canceled"

    def test_unknown_status_reported_in_message(self):
        task = AsyncTask.from_payload({"href": TASK, "status": "somethingNew", "operationName": "vappDeploy"})

        assert task.is_terminal
        assert "somethingNew" in task.error_message


# =============================================================================
# Operation Tests
# =============================================================================


class TestSubmitOperation:
    def test_power_off(self, client, mock_responses):
        mock_responses.add(responses.POST, f"{VAPP}/power/action/powerOff", json=task_body(), status=202)

        task = client.submit_operation(OperationKind.POWER_OFF, VAPP)

        assert task.href == TASK
        assert task.status == TaskStatus.RUNNING

    def test_deploy_payload(self, client, mock_responses):
        mock_responses.add(responses.POST, f"{VAPP}/action/deploy", json=task_body(), status=202)

        client.submit_operation(OperationKind.DEPLOY, VAPP, {"power_on": True})

        request = mock_responses.calls[0].request
        assert json.loads(request.body) == {"powerOn": True}
        assert request.headers["Content-Type"] == "application/vnd.vmware.vcloud.deployVAppParams+json"

    def test_undeploy_payload(self, client, mock_responses):
        mock_responses.add(responses.POST, f"{VAPP}/action/undeploy", json=task_body(), status=202)

        client.submit_operation(
            OperationKind.UNDEPLOY, VAPP, {"power_action": UndeployPowerAction.SUSPEND}
        )

        assert json.loads(mock_responses.calls[0].request.body) == {"undeployPowerAction": "suspend"}

    def test_network_connections_payload(self, client, mock_responses):
        mock_responses.add(responses.PUT, f"{VM}/networkConnectionSection/", json=task_body(), status=202)
        connection = NetworkConnection("tenant-net", 0, True, IpAllocationMode.POOL)

        client.submit_operation(
            OperationKind.EDIT_NETWORK_CONNECTIONS, VM, {"connections": [connection], "primary_index": 0}
        )

        body = json.loads(mock_responses.calls[0].request.body)
        assert body["primaryNetworkConnectionIndex"] == 0
        assert body["networkConnection"] == [{
            "network": "tenant-net",
            "networkConnectionIndex": 0,
            "isConnected": True,
            "ipAddressAllocationMode": "POOL",
        }]

    def test_cpu_and_memory_payloads(self, client, mock_responses):
        mock_responses.add(responses.PUT, f"{VM}/virtualHardwareSection/cpu", json=task_body(), status=202)
        mock_responses.add(responses.PUT, f"{VM}/virtualHardwareSection/memory", json=task_body(), status=202)

        client.submit_operation(OperationKind.EDIT_CPU, VM, {"cpu_count": 4})
        client.submit_operation(OperationKind.EDIT_MEMORY, VM, {"memory_mb": 8192})

        assert json.loads(mock_responses.calls[0].request.body) == {"resourceType": 3, "virtualQuantity": 4}
        assert json.loads(mock_responses.calls[1].request.body) == {"resourceType": 4, "virtualQuantity": 8192}

    def test_empty_response_means_no_task(self, client, mock_responses):
        mock_responses.add(responses.POST, f"{VM}/power/action/reboot", status=204)

        assert client.submit_operation(OperationKind.REBOOT, VM) is None

    def test_remove_returns_task(self, client, mock_responses):
        mock_responses.add(responses.DELETE, VAPP, json=task_body(operation="vdcDeleteVapp"), status=202)

        task = client.delete_resource(VAPP)

        assert task.operation == "vdcDeleteVapp"


class TestApiDialect:
    def test_legacy_undeploy_uses_save_state(self):
        dialect = ApiDialect("1.0")
        assert dialect.legacy
        assert dialect.undeploy_payload(UndeployPowerAction.SUSPEND) == {"saveState": True}
        assert dialect.undeploy_payload(UndeployPowerAction.POWER_OFF) == {"saveState": False}

    def test_current_undeploy_uses_power_action(self):
        dialect = ApiDialect("1.5")
        assert not dialect.legacy
        assert dialect.undeploy_payload(UndeployPowerAction.POWER_OFF) == {"undeployPowerAction": "powerOff"}

    def test_legacy_client_payload(self, mock_responses):
        client = VCloudClient(endpoint=API, username="u", org="o", password="p", api_version="1.0")
        mock_responses.add(responses.POST, f"{VAPP}/action/undeploy", json=task_body(), status=202)

        client.submit_operation(OperationKind.UNDEPLOY, VAPP, {"power_action": UndeployPowerAction.SUSPEND})

        assert json.loads(mock_responses.calls[0].request.body) == {"saveState": True}


# =============================================================================
# Organization Tests
# =============================================================================


class TestOrganization:
    @pytest.fixture
    def org(self, mock_responses):
        mock_responses.add(responses.GET, f"{API}/org", json={
            "org": [{"name": "other", "href": f"{API}/org/2"}, {"name": "acme", "href": f"{API}/org/1"}],
        })
        mock_responses.add(responses.GET, f"{API}/org/1", json={
            "name": "acme",
            "link": [
                {"rel": "down", "type": "application/vnd.vmware.vcloud.vdc+json", "href": f"{API}/vdc/1"},
                {"rel": "down", "type": "application/vnd.vmware.vcloud.orgNetwork+json",
                 "name": "tenant-net", "href": f"{API}/network/n-1"},
                {"rel": "down", "type": "application/vnd.vmware.vcloud.catalog+json",
                 "name": "private", "href": f"{API}/catalog/c-1"},
            ],
        })
        return mock_responses

    def test_selects_configured_org(self, client, org):
        assert client.org_name() == "acme"

    def test_lists_datacenters(self, client, org):
        assert client.list_datacenters() == [f"{API}/vdc/1"]

    def test_org_fetched_once_per_session(self, client, org):
        client.list_datacenters()
        client.list_datacenters()

        assert len(org.calls) == 2

    def test_lists_catalogs_with_published_flag(self, client, org):
        org.add(responses.GET, f"{API}/catalog/c-1", json={"name": "private", "isPublished": False})

        catalogs = client.list_catalogs()

        assert len(catalogs) == 1
        assert catalogs[0].published is False

    def test_catalogs_forbidden(self, client, org):
        org.add(responses.GET, f"{API}/catalog/c-1", status=403)

        with pytest.raises(AuthorizationError):
            client.list_catalogs()
