"""
Feedback ledger - reconciles a feedback request against an original
decision event and its existing feedback copies.

Everything here is a pure function over a snapshot: nothing is persisted
and nothing is locked. The caller loads the original and its copies,
calls process_feedback, and inserts the returned copy (if any). The
storage layer's uniqueness constraint on idempotency_key backs the
duplicate check when two identical requests race.
"""

from datetime import datetime, timedelta
from uuid import uuid4

from decisionos.schemas.event import (
    ACTION_APPROVED,
    ACTION_DRM_TRIGGERED,
    ACTION_REJECTED,
    CLIENT_ACTION_UNDO,
    MARKER_AUTOPILOT,
    MARKER_UNDO_AUTOPILOT,
    PERSISTED_ACTIONS,
    DecisionEvent,
)
from decisionos.schemas.feedback import FeedbackRequest, FeedbackResult
from decisionos.utils.primitives import elapsed, now_local

IDEMPOTENCY_WINDOW = timedelta(minutes=10)
UNDO_WINDOW = timedelta(minutes=10)

# client verb -> (persisted action, marker)
_CLIENT_ACTION_MAP = {
    ACTION_APPROVED: (ACTION_APPROVED, None),
    ACTION_REJECTED: (ACTION_REJECTED, None),
    ACTION_DRM_TRIGGERED: (ACTION_DRM_TRIGGERED, None),
    CLIENT_ACTION_UNDO: (ACTION_REJECTED, MARKER_UNDO_AUTOPILOT),
}


def resolve_client_action(
    client_action: str, autopilot: bool = False
) -> tuple[str, str | None]:
    """Translate a client verb into the (action, marker) pair that gets stored."""
    if client_action not in _CLIENT_ACTION_MAP:
        raise ValueError(f"Unknown client action: {client_action}")
    action, marker = _CLIENT_ACTION_MAP[client_action]
    if autopilot:
        if client_action != ACTION_APPROVED:
            raise ValueError("Only approvals can be authored by autopilot")
        marker = MARKER_AUTOPILOT
    return action, marker


def idempotency_key_for(
    original_id: str, action: str, marker: str | None, actioned_at: datetime
) -> str:
    """
    Key backing the ledger's unique index.

    Regular copies are bucketed by the idempotency window, so two identical
    requests landing in the same bucket collide at insert time. Autopilot
    approvals are unbucketed: there is at most one per original, ever.
    """
    if marker == MARKER_AUTOPILOT:
        return f"{original_id}:{action}:{marker}"
    bucket = int(actioned_at.timestamp() // IDEMPOTENCY_WINDOW.total_seconds())
    return f"{original_id}:{action}:{marker or '-'}:{bucket}"


def create_feedback_copy(
    original: DecisionEvent,
    client_action: str,
    autopilot: bool = False,
    now: datetime | None = None,
) -> DecisionEvent:
    """
    Build (not persist) a new feedback copy of original.

    This is the only place new action-bearing events are constructed.
    Tenant, subject, decided_at, payload and correlation fields are copied
    verbatim; action, marker and actioned_at belong to the copy.
    """
    action, marker = resolve_client_action(client_action, autopilot=autopilot)
    actioned_at = now or now_local()
    root_id = original.original_event_id or original.id
    return DecisionEvent(
        id=str(uuid4()),
        household_key=original.household_key,
        user_profile_id=original.user_profile_id,
        decided_at=original.decided_at,
        actioned_at=actioned_at,
        action=action,
        marker=marker,
        payload=original.payload,
        decision_type=original.decision_type,
        meal_id=original.meal_id,
        context_hash=original.context_hash,
        original_event_id=root_id,
        idempotency_key=idempotency_key_for(root_id, action, marker, actioned_at),
    )


def create_autopilot_approval(
    original: DecisionEvent, now: datetime | None = None
) -> DecisionEvent:
    """Approval authored by automation, marked so it can be undone later."""
    return create_feedback_copy(original, ACTION_APPROVED, autopilot=True, now=now)


def is_autopilot_event(event: DecisionEvent) -> bool:
    return event.action == ACTION_APPROVED and event.marker == MARKER_AUTOPILOT


def is_undo_event(event: DecisionEvent) -> bool:
    return event.action == ACTION_REJECTED and event.marker == MARKER_UNDO_AUTOPILOT


def is_within_undo_window(event: DecisionEvent, now: datetime | None = None) -> bool:
    """True when actioned_at is set and at most UNDO_WINDOW ago (inclusive)."""
    if event.actioned_at is None:
        return False
    now = now or now_local()
    return elapsed(event.actioned_at, now) <= UNDO_WINDOW


def has_autopilot_approval(copies: list[DecisionEvent]) -> bool:
    return any(is_autopilot_event(c) for c in copies)


def find_autopilot_approved_copy(copies: list[DecisionEvent]) -> DecisionEvent | None:
    """Most recent autopilot approval among copies, or None."""
    candidates = [c for c in copies if is_autopilot_event(c)]
    if not candidates:
        return None

    def _actioned_ts(event: DecisionEvent) -> float:
        return event.actioned_at.timestamp() if event.actioned_at else 0.0

    return max(candidates, key=_actioned_ts)


def has_duplicate_feedback(
    existing_copies: list[DecisionEvent],
    client_action: str,
    now: datetime | None = None,
) -> bool:
    """
    True if the request repeats an existing copy.

    A copy repeats the request when its action matches (and, for undo, its
    marker too) and it was actioned inside the idempotency window. An
    autopilot approval additionally blocks every later client approval,
    whatever its age; rejections and undos are never blocked by it.
    """
    now = now or now_local()
    target_action, target_marker = resolve_client_action(client_action)
    is_undo = client_action == CLIENT_ACTION_UNDO

    for copy in existing_copies:
        if copy.action != target_action:
            continue
        if client_action == ACTION_APPROVED and copy.marker == MARKER_AUTOPILOT:
            return True
        if is_undo and copy.marker != target_marker:
            continue
        if copy.actioned_at is None:
            continue
        if elapsed(copy.actioned_at, now) < IDEMPOTENCY_WINDOW:
            return True
    return False


def process_undo(
    autopilot_event: DecisionEvent,
    existing_copies: list[DecisionEvent],
    now: datetime | None = None,
) -> FeedbackResult:
    """
    Reverse an autopilot approval.

    Allowed only against an autopilot approval, inside the undo window, and
    at most once per idempotency window. recorded is always True; reason
    tells a real write apart from a silent no-op.
    """
    now = now or now_local()
    if not is_autopilot_event(autopilot_event):
        return FeedbackResult(reason="not_autopilot")

    if not is_within_undo_window(autopilot_event, now):
        return FeedbackResult(reason="outside_window")

    if has_duplicate_feedback(existing_copies, CLIENT_ACTION_UNDO, now):
        return FeedbackResult(is_duplicate=True, reason="duplicate")

    undo_copy = create_feedback_copy(autopilot_event, CLIENT_ACTION_UNDO, now=now)
    return FeedbackResult(reason="success", feedback_copy=undo_copy)


def process_feedback(
    original: DecisionEvent,
    existing_copies: list[DecisionEvent],
    request: FeedbackRequest,
    now: datetime | None = None,
) -> FeedbackResult:
    """Decide success / duplicate / not applicable for one feedback request."""
    now = now or now_local()

    if request.action == CLIENT_ACTION_UNDO:
        target = find_autopilot_approved_copy(existing_copies)
        if target is None and is_autopilot_event(original):
            target = original
        if target is None:
            return FeedbackResult(reason="not_autopilot")
        return process_undo(target, existing_copies, now)

    if has_duplicate_feedback(existing_copies, request.action, now):
        return FeedbackResult(is_duplicate=True, reason="duplicate")

    feedback_copy = create_feedback_copy(original, request.action, now=now)
    return FeedbackResult(reason="success", feedback_copy=feedback_copy)


def process_autopilot_approval(
    original: DecisionEvent,
    existing_copies: list[DecisionEvent],
    now: datetime | None = None,
) -> FeedbackResult:
    """Record an automation approval once per original; later calls are no-ops."""
    if is_autopilot_event(original) or has_autopilot_approval(existing_copies):
        return FeedbackResult(is_duplicate=True, reason="duplicate")
    return FeedbackResult(
        reason="success", feedback_copy=create_autopilot_approval(original, now=now)
    )


# Side-effect eligibility. Execution belongs to external collaborators.


def should_run_consumption(event: DecisionEvent) -> bool:
    """Only approvals consume inventory."""
    return event.action == ACTION_APPROVED


def should_update_taste_signal(event: DecisionEvent) -> bool:
    return event.action in PERSISTED_ACTIONS


def should_update_meal_score_cache(event: DecisionEvent) -> bool:
    """Every persisted action moves the cache except an undo."""
    if event.marker == MARKER_UNDO_AUTOPILOT:
        return False
    return event.action in PERSISTED_ACTIONS


def should_reverse_consumption(event: DecisionEvent) -> bool:
    """
    Always False.

    Per-event consumption amounts are not tracked, so an undo cannot
    compensate inventory. Callers rely on this staying a constant until
    consumption is recorded per decision event.
    """
    return False
