"""
Compensating actions and finalization for multi-step workflows.

A CompensationStack records, for every step that completed, how to undo
it. When a later step fails the stack is unwound newest-first; each
compensation's failure is logged and recorded, never raised, so the error
that triggered the unwind is the one the caller sees.

A FinalizationReport is the capture workflow's counterpart: a phase that
always runs after the main work and whose failures are kept apart from
the workflow's result.
"""

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class WorkflowStep:
    """
    An action plus the optional action that undoes it.

    The compensation receives whatever the action returned, so a step that
    creates a resource can register the removal of that resource.
    """

    name: str
    action: Callable[[], Any]
    compensate: Optional[Callable[[Any], Any]] = None


class CompensationStack:
    """
    Usage:
        stack = CompensationStack(correlation_id)
        group = stack.run(WorkflowStep("instantiate", create, compensate=remove))
        ...
        except CloudError:
            stack.unwind()
            raise
    """

    def __init__(self, correlation_id: str = ""):
        self.correlation_id = correlation_id
        self._pending: List[Tuple[str, Callable[[], Any]]] = []

    def push(self, name: str, compensate: Callable[[], Any]) -> None:
        self._pending.append((name, compensate))

    def run(self, step: WorkflowStep) -> Any:
        """Run a step; register its compensation only once it succeeded."""
        result = step.action()
        if step.compensate is not None:
            self.push(step.name, functools.partial(step.compensate, result))
        return result

    def unwind(self) -> List[Dict[str, Any]]:
        """
        Run registered compensations in reverse order.

        Returns:
            One record per compensation: {"step", "status", "error"}
        """
        records = []
        if not self._pending:
            logger.info(f"[{self.correlation_id}] No compensating actions to run")
            return records

        logger.warning(
            f"[{self.correlation_id}] Running {len(self._pending)} compensating actions"
        )

        while self._pending:
            name, compensate = self._pending.pop()
            try:
                compensate()
            except Exception as e:
                logger.error(f"[{self.correlation_id}] Compensation for {name} failed: {e}")
                records.append({"step": name, "status": "failed", "error": str(e)})
            else:
                logger.info(f"[{self.correlation_id}] Compensated {name}")
                records.append({"step": name, "status": "ok", "error": ""})

        return records

    def __len__(self) -> int:
        return len(self._pending)


@dataclass
class FinalizationReport:
    """Outcome of a finalization phase; failures never propagate."""

    correlation_id: str = ""
    completed: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def attempt(self, name: str, action: Callable[[], Any], default: Any = None) -> Any:
        """Run one finalization action, returning ``default`` if it fails."""
        try:
            result = action()
        except Exception as e:
            logger.warning(f"[{self.correlation_id}] Finalization step {name} failed: {e}")
            self.errors.append({"step": name, "error": str(e)})
            return default
        self.completed.append(name)
        return result

    def records(self) -> List[Dict[str, Any]]:
        ok = [{"step": name, "status": "ok", "error": ""} for name in self.completed]
        failed = [{"step": e["step"], "status": "failed", "error": e["error"]} for e in self.errors]
        return ok + failed
