"""Workflow catalog — validates dict definitions into immutable workflows.

Definitions are plain data: one module per workflow exporting a ``WORKFLOW``
dict. Everything is checked here at load time; a bad definition raises
``CatalogError`` and the process does not start.
"""

import logging
from pathlib import Path

import yaml

from lifecycle_mail.errors import CatalogError
from lifecycle_mail.models import (
    Condition,
    ConditionKind,
    Operator,
    PROFILE_COMPLETENESS,
    StepDefinition,
    TriggerEvent,
    WorkflowDefinition,
    WorkflowType,
)

logger = logging.getLogger(__name__)

_KNOWN_KINDS = {k.value for k in ConditionKind}


class WorkflowCatalog:
    """Read-only, ordered set of workflow definitions."""

    def __init__(self, workflows: list[WorkflowDefinition]):
        seen: set[str] = set()
        step_ids: set[str] = set()
        for wf in workflows:
            if wf.id in seen:
                raise CatalogError(f"Duplicate workflow id: {wf.id}")
            seen.add(wf.id)
            for step in wf.steps:
                if step.id in step_ids:
                    raise CatalogError(f"Duplicate step id {step.id!r} in workflow {wf.id}")
                step_ids.add(step.id)
        self._workflows = tuple(workflows)
        self._by_id = {wf.id: wf for wf in workflows}

    @classmethod
    def from_definitions(cls, definitions: list[dict]) -> "WorkflowCatalog":
        return cls([parse_workflow(d) for d in definitions])

    def __len__(self) -> int:
        return len(self._workflows)

    def __iter__(self):
        return iter(self._workflows)

    def all(self) -> list[WorkflowDefinition]:
        return list(self._workflows)

    def get(self, workflow_id: str) -> WorkflowDefinition | None:
        return self._by_id.get(workflow_id)

    def get_step(self, workflow_id: str, step_number: int) -> StepDefinition | None:
        wf = self._by_id.get(workflow_id)
        return wf.get_step(step_number) if wf else None

    def find_by_trigger(self, event: TriggerEvent | str) -> list[WorkflowDefinition]:
        """Active workflows for ``event``, in definition order."""
        event = TriggerEvent(event)
        return [wf for wf in self._workflows if wf.active and wf.trigger_event == event]

    def templates(self) -> set[str]:
        return {step.template for wf in self._workflows for step in wf.steps}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def load_definitions_file(path: Path) -> list[dict]:
    """Read extra workflow definitions from a YAML file.

    The file holds a list of workflow mappings, or a mapping with a
    ``workflows`` list, in the same shape as the built-in modules.
    """
    try:
        data = yaml.safe_load(Path(path).read_text())
    except (OSError, yaml.YAMLError) as e:
        raise CatalogError(f"Cannot read workflow file {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("workflows")
    if not isinstance(data, list) or not all(isinstance(d, dict) for d in data):
        raise CatalogError(f"Workflow file {path} must contain a list of workflows")
    return data


def parse_workflow(data: dict) -> WorkflowDefinition:
    workflow_id = data.get("id")
    if not workflow_id:
        raise CatalogError(f"Workflow definition without id: {data.get('name', '?')}")

    trigger = data.get("trigger")
    try:
        trigger_event = TriggerEvent(trigger)
    except ValueError:
        raise CatalogError(f"Workflow {workflow_id}: unknown trigger event {trigger!r}") from None

    try:
        wf_type = WorkflowType(data.get("type"))
    except ValueError:
        raise CatalogError(f"Workflow {workflow_id}: unknown type {data.get('type')!r}") from None

    raw_steps = data.get("steps") or []
    if not raw_steps:
        raise CatalogError(f"Workflow {workflow_id}: no steps defined")

    steps = tuple(_parse_step(workflow_id, s) for s in raw_steps)
    numbers = [s.step_number for s in steps]
    if numbers != list(range(1, len(steps) + 1)):
        raise CatalogError(
            f"Workflow {workflow_id}: step numbers must be contiguous from 1, got {numbers}"
        )

    return WorkflowDefinition(
        id=workflow_id,
        name=data.get("name", workflow_id),
        type=wf_type,
        trigger_event=trigger_event,
        steps=steps,
        active=bool(data.get("active", True)),
        description=data.get("description", ""),
        target_segments=_segments(workflow_id, data, "target_segments"),
        exclude_segments=_segments(workflow_id, data, "exclude_segments"),
    )


def _segments(workflow_id: str, data: dict, key: str) -> frozenset[str]:
    value = data.get(key)
    if value is None:
        return frozenset()
    if not isinstance(value, (list, tuple)) or not all(isinstance(s, str) for s in value):
        raise CatalogError(f"Workflow {workflow_id}: {key} must be a list of segment names, got {value!r}")
    return frozenset(value)


def _parse_step(workflow_id: str, data: dict) -> StepDefinition:
    step_number = data.get("step")
    if not isinstance(step_number, int) or isinstance(step_number, bool):
        raise CatalogError(f"Workflow {workflow_id}: step number must be an int, got {step_number!r}")

    delay_days = data.get("delay_days", 0)
    delay_hours = data.get("delay_hours", 0)
    for name, value in (("delay_days", delay_days), ("delay_hours", delay_hours)):
        if not isinstance(value, int) or isinstance(value, bool):
            raise CatalogError(
                f"Workflow {workflow_id} step {step_number}: {name} must be an int, got {value!r}"
            )
    if delay_days < 0 or delay_hours < 0:
        raise CatalogError(f"Workflow {workflow_id} step {step_number}: negative delay")

    if not data.get("template"):
        raise CatalogError(f"Workflow {workflow_id} step {step_number}: template required")

    return StepDefinition(
        id=data.get("id") or f"{workflow_id}-{step_number}",
        step_number=step_number,
        template=data["template"],
        subject=data.get("subject", ""),
        delay_days=delay_days,
        delay_hours=delay_hours,
        conditions=tuple(
            _parse_condition(workflow_id, step_number, c) for c in data.get("conditions") or ()
        ),
        variants=tuple(data.get("variants") or ()),
    )


def _parse_condition(workflow_id: str, step_number: int, data: dict) -> Condition:
    kind = data.get("kind", "")
    if kind not in _KNOWN_KINDS:
        # Unknown kinds load and evaluate as satisfied
        logger.warning(
            "Workflow %s step %d: unknown condition kind %r will always pass",
            workflow_id, step_number, kind,
        )
    try:
        op = Operator(data.get("operator"))
    except ValueError:
        raise CatalogError(
            f"Workflow {workflow_id} step {step_number}: unknown operator {data.get('operator')!r}"
        ) from None

    return Condition(
        kind=kind,
        operator=op,
        value=data.get("value"),
        field=data.get("field") or PROFILE_COMPLETENESS,
    )
