"""Output task creator contract and registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from discubot.logging import get_logger
from discubot.processor.errors import ProcessingError, ProcessingStage
from discubot.processor.models import DetectedTask, OutputTaskRef

log = get_logger("discubot.outputs.base")


@dataclass
class TaskContext:
    """Discussion context a creator may use to enrich the created task."""

    output_id: str
    task_index: int
    summary: str = ""
    key_points: list[str] = field(default_factory=list)
    source_url: str = ""
    source_type: str = ""
    participants: list[str] = field(default_factory=list)


@runtime_checkable
class OutputTaskCreator(Protocol):
    """Creates one task in one destination per call."""

    output_type: str

    async def create_task(
        self,
        task: DetectedTask,
        output_config: dict[str, Any],
        *,
        context: TaskContext,
    ) -> OutputTaskRef:
        """Create the task and return its reference.

        Raises:
            OutputError: Destination failure, tagged with ``retryable``.
        """
        ...


class OutputRegistry:
    """Lookup from ``output_type`` to its task creator."""

    def __init__(self, creators: list[OutputTaskCreator] | None = None):
        self._creators: dict[str, OutputTaskCreator] = {}
        for creator in creators or []:
            self.register(creator)

    def register(self, creator: OutputTaskCreator) -> None:
        self._creators[creator.output_type] = creator
        log.debug("output_creator_registered", output_type=creator.output_type)

    def has(self, output_type: str) -> bool:
        return output_type in self._creators

    def get(self, output_type: str) -> OutputTaskCreator:
        creator = self._creators.get(output_type)
        if creator is None:
            raise ProcessingError(
                f"No task creator registered for output type: {output_type}",
                ProcessingStage.TASK_CREATION,
                context={"outputType": output_type, "available": self.output_types},
                retryable=False,
            )
        return creator

    @property
    def output_types(self) -> list[str]:
        return sorted(self._creators)

    async def close(self) -> None:
        for creator in self._creators.values():
            close = getattr(creator, "close", None)
            if close is not None:
                await close()
