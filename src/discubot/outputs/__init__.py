"""Output task creators: one per destination type."""

from discubot.outputs.base import OutputRegistry, OutputTaskCreator, TaskContext
from discubot.outputs.notion import NotionTaskCreator

__all__ = ["NotionTaskCreator", "OutputRegistry", "OutputTaskCreator", "TaskContext"]
