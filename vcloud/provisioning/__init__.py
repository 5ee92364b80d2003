"""
Provisioning workflows and job tracking.

This package runs the multi-step lifecycle workflows:
- launch: instantiate a template, customize, bind network, size, deploy
- capture_image: background capture with guaranteed restore of the source
- terminate: power off a machine and remove its group once nothing runs

Usage:
    from vcloud.provisioning import get_orchestrator

    orchestrator = get_orchestrator()
    token = orchestrator.capture_image("/vApp/vm-42", "golden", "Golden image")
    image_id = token.result()
"""

from vcloud.provisioning.state import (
    CompletionToken,
    JobStatus,
    WorkflowJob,
    WorkflowKind,
    WorkflowStateManager,
)
from vcloud.provisioning.compensation import (
    CompensationStack,
    FinalizationReport,
    WorkflowStep,
)
from vcloud.provisioning.executor import (
    WorkflowOrchestrator,
    get_orchestrator,
)

__all__ = [
    "CompletionToken",
    "JobStatus",
    "WorkflowJob",
    "WorkflowKind",
    "WorkflowStateManager",
    "CompensationStack",
    "FinalizationReport",
    "WorkflowStep",
    "WorkflowOrchestrator",
    "get_orchestrator",
]
