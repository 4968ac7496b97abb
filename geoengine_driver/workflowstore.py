import logging
import threading
from typing import Dict, List

from geoengine_driver.errors import WorkflowNotFoundException
from geoengine_driver.workflow import Workflow

_log = logging.getLogger(__name__)


class WorkflowStore:
    """Base interface for workflow storage."""

    def register(self, workflow: Workflow) -> Workflow:
        """Store workflow (if not already stored) and return the stored instance."""
        raise NotImplementedError

    def get(self, workflow_id: str) -> Workflow:
        raise NotImplementedError

    def contains(self, workflow_id: str) -> bool:
        raise NotImplementedError


class InMemoryWorkflowStore(WorkflowStore):
    """
    Content addressed, in-memory workflow store.

    Workflows are never updated: inserts are idempotent and the first writer wins.
    """

    def __init__(self):
        self._workflows: Dict[str, Workflow] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._workflows)

    def register(self, workflow: Workflow) -> Workflow:
        with self._lock:
            existing = self._workflows.get(workflow.id)
            if existing is not None:
                _log.debug(f"Workflow {workflow.id} already registered")
                return existing
            self._workflows[workflow.id] = workflow
        _log.info(f"Registered workflow {workflow.id} ({workflow.root.type})")
        return workflow

    def get(self, workflow_id: str) -> Workflow:
        try:
            return self._workflows[workflow_id]
        except KeyError:
            raise WorkflowNotFoundException(workflow_id=workflow_id) from None

    def contains(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    def list_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._workflows.keys())
