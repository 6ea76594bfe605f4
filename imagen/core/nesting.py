from dataclasses import dataclass

from imagen.core.workflows import TaskSpec, WorkflowDefinition
from imagen.processors.kinds import ProcessKind, lookup_process_kind


@dataclass(frozen=True)
class NestingCheck:
    valid: bool
    error: str | None = None


def _nested_workflow_tasks(workflow: WorkflowDefinition) -> list[TaskSpec]:
    return [
        task
        for task in [*workflow.pre_tasks, *workflow.post_tasks]
        if task.process is not None
        and lookup_process_kind(task.process) == ProcessKind.EXECUTE_WORKFLOW
    ]


def validate_no_illegal_nesting(
    workflow: WorkflowDefinition,
    all_workflows: list[WorkflowDefinition],
    visited: frozenset[str] = frozenset(),
) -> NestingCheck:
    """Validate the executeWorkflow references reachable from a workflow.

    Only one level of nesting is allowed: a workflow invoked through
    executeWorkflow must not itself contain an executeWorkflow task. Missing
    targets and cycles are rejected as well.
    """
    by_name = {w.name: w for w in all_workflows}
    visited = visited | {workflow.name}

    for task in _nested_workflow_tasks(workflow):
        target_name = task.parameters.get("workflow")
        if not target_name:
            return NestingCheck(
                False,
                f"executeWorkflow process missing 'workflow' parameter "
                f"in workflow \"{workflow.name}\"",
            )

        target = by_name.get(target_name)
        if target is None:
            return NestingCheck(
                False,
                f"Target workflow \"{target_name}\" not found for executeWorkflow "
                f"in workflow \"{workflow.name}\"",
            )

        if target_name in visited:
            return NestingCheck(
                False,
                f"Circular workflow reference detected: \"{target_name}\" "
                f"in workflow \"{workflow.name}\"",
            )

        if _nested_workflow_tasks(target):
            return NestingCheck(
                False,
                f"Nested executeWorkflow detected: workflow \"{target_name}\" contains "
                f"executeWorkflow process. Only one level of nesting is allowed.",
            )

        result = validate_no_illegal_nesting(target, all_workflows, visited)
        if not result.valid:
            return result

    return NestingCheck(True)
