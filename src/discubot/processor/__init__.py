"""Discussion processing pipeline.

The orchestrator, notifier and storage backends live in their own modules
(``discubot.processor.orchestrator`` and friends); only the leaf types are
re-exported here because adapters and outputs import them.
"""

from discubot.processor.errors import (
    AdapterError,
    DiscussionNotFoundError,
    InvalidTransitionError,
    OutputError,
    ProcessingError,
    ProcessingStage,
    ValidationError,
)
from discubot.processor.models import (
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    ParsedDiscussion,
    ProcessingOptions,
)
from discubot.processor.retry import RetryOptions

__all__ = [
    "AdapterError",
    "Discussion",
    "DiscussionNotFoundError",
    "DiscussionStatus",
    "DiscussionThread",
    "InvalidTransitionError",
    "OutputError",
    "ParsedDiscussion",
    "ProcessingError",
    "ProcessingOptions",
    "ProcessingStage",
    "RetryOptions",
    "ValidationError",
]
