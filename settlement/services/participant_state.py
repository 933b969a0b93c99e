from __future__ import annotations

from settlement.db.enums import ParticipantState

_STATE_PRECEDENCE: tuple[tuple[str, ParticipantState], ...] = (
    ("checked_in_at", ParticipantState.CHECKED_IN),
    ("withdrawn_at", ParticipantState.WITHDRAWN),
    ("confirmed_at", ParticipantState.CONFIRMED),
    ("deposit_paid_at", ParticipantState.DEPOSIT_PAID),
    ("documents_verified_at", ParticipantState.DOCUMENTS_VERIFIED),
    ("documents_rejected_at", ParticipantState.DOCUMENTS_REJECTED),
    ("rejected_at", ParticipantState.REJECTED),
    ("submitted_at", ParticipantState.PENDING_DOCUMENT_REVIEW),
    ("registered_at", ParticipantState.REGISTERED),
)


def derive_participant_state(participant) -> ParticipantState:
    """Resolve the single current state from the participant's lifecycle timestamps.

    The most advanced timestamp wins, so a confirmed participant that later
    withdrew reports WITHDRAWN even though confirmed_at is still set.
    """
    for field_name, state in _STATE_PRECEDENCE:
        if getattr(participant, field_name, None) is not None:
            return state
    return ParticipantState.UNKNOWN


def is_confirmed_participant(participant) -> bool:
    return (
        participant.confirmed_at is not None
        and participant.rejected_at is None
        and participant.withdrawn_at is None
        and not participant.is_disqualified
    )


def has_paid_deposit(participant) -> bool:
    return participant.deposit_paid_at is not None
