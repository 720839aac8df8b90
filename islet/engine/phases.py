"""Phase transition rules for the session state machine."""

from __future__ import annotations

from islet.models import (
    HookEvent,
    HookEventKind,
    PermissionContext,
    PhaseKind,
    SessionPhase,
)

# Allowed moves between phase kinds. Any phase may also move to ENDED.
LEGAL_TRANSITIONS: dict[PhaseKind, frozenset[PhaseKind]] = {
    PhaseKind.IDLE: frozenset({PhaseKind.PROCESSING}),
    PhaseKind.PROCESSING: frozenset(
        {
            PhaseKind.WAITING_FOR_APPROVAL,
            PhaseKind.WAITING_FOR_INPUT,
            PhaseKind.COMPACTING,
        }
    ),
    PhaseKind.WAITING_FOR_APPROVAL: frozenset({PhaseKind.PROCESSING}),
    PhaseKind.WAITING_FOR_INPUT: frozenset({PhaseKind.PROCESSING}),
    PhaseKind.COMPACTING: frozenset({PhaseKind.IDLE}),
    PhaseKind.ENDED: frozenset(),
}

# Status keywords sent by the emitter. "starting" is absent on purpose:
# a new session stays idle until work begins.
STATUS_PHASES: dict[str, PhaseKind] = {
    "waiting_for_input": PhaseKind.WAITING_FOR_INPUT,
    "running_tool": PhaseKind.PROCESSING,
    "processing": PhaseKind.PROCESSING,
    "compacting": PhaseKind.COMPACTING,
    "ended": PhaseKind.ENDED,
}

IDLE_NOTIFICATION = "idle_prompt"


def can_transition(current: PhaseKind, target: PhaseKind) -> bool:
    """Return True if the state machine allows moving from current to target."""
    if target is PhaseKind.ENDED:
        return True
    return target in LEGAL_TRANSITIONS[current]


def determine_phase(event: HookEvent) -> SessionPhase:
    """
    Derive the phase a hook event asks for.

    Priority: compaction, then permission request, then idle notification,
    then the status keyword. Unknown statuses fall back to idle.
    """
    if event.event is HookEventKind.PRE_COMPACT:
        return SessionPhase.of(PhaseKind.COMPACTING)

    if event.expects_response and event.tool:
        return SessionPhase.waiting_for_approval(
            PermissionContext(
                tool_use_id=event.tool_use_id or "",
                tool_name=event.tool,
                tool_input=event.tool_input,
            )
        )

    if (
        event.event is HookEventKind.NOTIFICATION
        and event.notification_type == IDLE_NOTIFICATION
    ):
        return SessionPhase.of(PhaseKind.IDLE)

    return SessionPhase.of(STATUS_PHASES.get(event.status, PhaseKind.IDLE))
