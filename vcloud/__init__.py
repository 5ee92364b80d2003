"""
Lifecycle orchestration for vCloud Director style control planes.

This package provides:
- A control-plane client interface and its REST adapter
- Task and idle waits that tolerate eventually consistent remote state
- Launch, capture-image and terminate workflows with compensation
"""

from .errors import (
    CloudError,
    TransientObservationError,
    SpuriousRejectionError,
    OperationError,
    NotFoundError,
    AuthenticationError,
    AuthorizationError,
    TaskTimeoutError,
    WorkflowCancelledError,
    RetryExhaustedError,
    ConfigurationError,
    describe_error,
)

from .models import (
    AsyncTask,
    TaskStatus,
    ManagedResource,
    ResourceStatus,
    ResourceKind,
    NetworkConnection,
    ProvisioningRequest,
    ComputeShape,
    MachineRecord,
    MachineState,
    ImageRecord,
)

from .locator import ResourceLocator
from .naming import normalize_name
from .client import ControlPlane, VCloudClient, OperationKind
from .waiters import Waiter
