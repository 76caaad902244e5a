"""Source adapters: one per external collaboration surface."""

from discubot.adapters.base import SourceAdapter, ValidationResult
from discubot.adapters.figma import FigmaAdapter
from discubot.adapters.notion import NotionAdapter
from discubot.adapters.registry import AdapterRegistry, create_default_registry
from discubot.adapters.slack import SlackAdapter

__all__ = [
    "AdapterRegistry",
    "FigmaAdapter",
    "NotionAdapter",
    "SlackAdapter",
    "SourceAdapter",
    "ValidationResult",
    "create_default_registry",
]
