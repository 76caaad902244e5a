"""Discussion status state machine."""

from __future__ import annotations

from discubot.processor.errors import InvalidTransitionError
from discubot.processor.models import DiscussionStatus

_TRANSITIONS: dict[DiscussionStatus, frozenset[DiscussionStatus]] = {
    DiscussionStatus.PENDING: frozenset({DiscussionStatus.PROCESSING}),
    DiscussionStatus.PROCESSING: frozenset({DiscussionStatus.ANALYZED, DiscussionStatus.FAILED}),
    DiscussionStatus.ANALYZED: frozenset({DiscussionStatus.COMPLETED, DiscussionStatus.FAILED}),
    DiscussionStatus.FAILED: frozenset({DiscussionStatus.RETRYING}),
    DiscussionStatus.RETRYING: frozenset({DiscussionStatus.PROCESSING, DiscussionStatus.FAILED}),
    DiscussionStatus.COMPLETED: frozenset(),
}


def allowed_transitions(current: DiscussionStatus | str) -> frozenset[DiscussionStatus]:
    return _TRANSITIONS[DiscussionStatus(current)]


def can_transition(current: DiscussionStatus | str, target: DiscussionStatus | str) -> bool:
    """Check whether ``current -> target`` is a legal move."""
    return DiscussionStatus(target) in allowed_transitions(current)


def ensure_transition(
    current: DiscussionStatus | str,
    target: DiscussionStatus | str,
    discussion_id: str | None = None,
) -> None:
    """Raise :class:`InvalidTransitionError` unless ``current -> target`` is legal."""
    if not can_transition(current, target):
        raise InvalidTransitionError(str(current), str(target), discussion_id)


def predecessors(target: DiscussionStatus | str) -> frozenset[DiscussionStatus]:
    """All statuses from which ``target`` may be entered."""
    target = DiscussionStatus(target)
    return frozenset(s for s, nexts in _TRANSITIONS.items() if target in nexts)


def is_terminal(status: DiscussionStatus | str, *, attempts: int, max_attempts: int) -> bool:
    """Completed discussions and failed ones with no attempts left are terminal."""
    status = DiscussionStatus(status)
    if status == DiscussionStatus.COMPLETED:
        return True
    return status == DiscussionStatus.FAILED and attempts >= max_attempts
