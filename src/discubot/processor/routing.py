"""Domain router: matches detected tasks to a flow's outputs."""

from __future__ import annotations

from dataclasses import dataclass, field

from discubot.logging import get_logger
from discubot.processor.models import DetectedTask, FlowOutput

log = get_logger("discubot.processor.routing")


@dataclass
class RoutedTask:
    """A detected task and the outputs it was routed to."""

    task_index: int
    task: DetectedTask
    outputs: list[FlowOutput]
    matched_by: str  # "domain" or "default"


@dataclass
class RoutingResult:
    routed: list[RoutedTask] = field(default_factory=list)
    dropped: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def assignment_count(self) -> int:
        return sum(len(r.outputs) for r in self.routed)


def default_outputs(outputs: list[FlowOutput]) -> list[FlowOutput]:
    return [o for o in outputs if o.is_default]


def match_outputs(task: DetectedTask, outputs: list[FlowOutput]) -> list[FlowOutput]:
    """Outputs whose domain filter contains the task's domain.

    Outputs with an empty domain filter never match by domain.
    """
    if task.domain is None:
        return []
    return [o for o in outputs if o.domain_filter and o.accepts(task.domain)]


def route_tasks(tasks: list[DetectedTask], outputs: list[FlowOutput]) -> RoutingResult:
    """Route every task to the outputs that should receive it.

    A task with a domain goes to all outputs declaring that domain. Tasks
    with no domain, or a domain nobody declares, go to the default
    output(s). With no default a task is dropped with a warning. Several
    defaults all receive the task, in the order ``outputs`` is given.

    Args:
        tasks: Detected tasks, in analysis order.
        outputs: The flow's active outputs in creation order.

    Returns:
        The routing plan plus dropped task indexes and warnings.
    """
    result = RoutingResult()
    defaults = default_outputs(outputs)

    if len(defaults) > 1:
        warning = f"Flow has {len(defaults)} default outputs; routing to all of them"
        result.warnings.append(warning)
        log.warning(
            "multiple_default_outputs",
            output_ids=[o.id for o in defaults],
        )

    for index, task in enumerate(tasks):
        matched = match_outputs(task, outputs)
        if matched:
            result.routed.append(RoutedTask(index, task, matched, "domain"))
            continue

        if defaults:
            result.routed.append(RoutedTask(index, task, list(defaults), "default"))
            continue

        warning = f"Task {index} ({task.title!r}) dropped: no output for domain {task.domain!r}"
        result.dropped.append(index)
        result.warnings.append(warning)
        log.warning("task_dropped_no_output", task_index=index, domain=task.domain)

    log.debug(
        "tasks_routed",
        task_count=len(tasks),
        routed=len(result.routed),
        dropped=len(result.dropped),
        assignments=result.assignment_count,
    )
    return result


def validate_flow_outputs(outputs: list[FlowOutput]) -> list[str]:
    """Check a flow's output configuration.

    Raises:
        ValueError: If there are no outputs, or none of them is a default.

    Returns:
        Non-fatal warnings (several defaults, or outputs that can never
        receive a task).
    """
    if not outputs:
        raise ValueError("Flow must have at least one output")

    defaults = default_outputs(outputs)
    if not defaults:
        raise ValueError("Flow must have a default output")

    warnings: list[str] = []
    if len(defaults) > 1:
        warnings.append(
            f"Flow has {len(defaults)} default outputs; tasks will be sent to each of them"
        )
    for output in outputs:
        if not output.is_default and not output.domain_filter:
            warnings.append(f"Output {output.id} has no domain filter and is not a default")
    return warnings
