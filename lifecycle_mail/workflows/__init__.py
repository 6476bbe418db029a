"""Workflow registry — loads all workflow definitions into CATALOG.

Importing this module validates every definition; a malformed one raises
CatalogError and stops the process.
"""

from lifecycle_mail.config import WORKFLOWS_FILE
from lifecycle_mail.models import StepDefinition, TriggerEvent, WorkflowDefinition
from lifecycle_mail.workflows.catalog import WorkflowCatalog, load_definitions_file
from lifecycle_mail.workflows.engagement_recovery import WORKFLOW_7D as engagement_7d
from lifecycle_mail.workflows.engagement_recovery import WORKFLOW_14D as engagement_14d
from lifecycle_mail.workflows.onboarding import WORKFLOW as onboarding
from lifecycle_mail.workflows.retention import WORKFLOW as retention
from lifecycle_mail.workflows.trial_conversion import WORKFLOW as trial_conversion
from lifecycle_mail.workflows.welcome import WORKFLOW as welcome

DEFINITIONS: list[dict] = [
    welcome,
    onboarding,
    engagement_7d,
    engagement_14d,
    trial_conversion,
    retention,
]

if WORKFLOWS_FILE:
    DEFINITIONS.extend(load_definitions_file(WORKFLOWS_FILE))

CATALOG = WorkflowCatalog.from_definitions(DEFINITIONS)


def get_workflow(workflow_id: str) -> WorkflowDefinition | None:
    """Get a workflow definition by ID."""
    return CATALOG.get(workflow_id)


def get_step(workflow_id: str, step_number: int) -> StepDefinition | None:
    """Get one step of a workflow, or None."""
    return CATALOG.get_step(workflow_id, step_number)


def find_by_trigger(event: TriggerEvent | str) -> list[WorkflowDefinition]:
    """Get all active workflows that match a trigger."""
    return CATALOG.find_by_trigger(event)
