# app/services/transfer_state.py
from __future__ import annotations

"""
Transfer state machine
======================

The lifecycle of a `Transfer` row, encoded as data:

    request   failed | cancelled | (soft-deleted)  → pending
    pause     pending | downloading                → paused
    resume    paused                               → downloading
    cancel    pending | downloading | paused       → cancelled (+soft-deleted)
    delete    completed                            → completed (+soft-deleted)
    start     pending | downloading | failed       → downloading
    complete  downloading                          → completed
    fail      pending | downloading | failed       → failed

User-facing events (pause/resume/cancel/delete) come from `TransferService`;
start/complete/fail come from the worker. Re-admission (`request`) of a
failed, cancelled or soft-deleted row resets it in place.

Illegal transitions raise `InvalidTransitionError` naming the current status;
nothing is silently ignored and the row is left untouched.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from app.core.exceptions import InvalidTransitionError
from app.db.base_class import utcnow
from app.db.models.transfer import Transfer
from app.schemas.enums import TransferEvent, TransferStatus

__all__ = [
    "Transition",
    "TRANSITIONS",
    "can_transition",
    "ensure_transition",
    "apply_transition",
    "can_readmit",
    "reset_for_readmission",
]

S = TransferStatus


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[TransferStatus]
    target: TransferStatus
    action: str  # verb used in client-facing errors
    soft_delete: bool = False


TRANSITIONS: Dict[TransferEvent, Transition] = {
    TransferEvent.REQUEST: Transition(frozenset({S.FAILED, S.CANCELLED}), S.PENDING, "request"),
    TransferEvent.PAUSE: Transition(frozenset({S.PENDING, S.DOWNLOADING}), S.PAUSED, "pause"),
    TransferEvent.RESUME: Transition(frozenset({S.PAUSED}), S.DOWNLOADING, "resume"),
    TransferEvent.CANCEL: Transition(
        frozenset({S.PENDING, S.DOWNLOADING, S.PAUSED}), S.CANCELLED, "cancel", soft_delete=True
    ),
    TransferEvent.DELETE: Transition(frozenset({S.COMPLETED}), S.COMPLETED, "delete", soft_delete=True),
    # Worker-owned. FAILED is a valid start source because queue retries run
    # against the row the previous attempt marked failed.
    TransferEvent.START: Transition(frozenset({S.PENDING, S.DOWNLOADING, S.FAILED}), S.DOWNLOADING, "start"),
    TransferEvent.COMPLETE: Transition(frozenset({S.DOWNLOADING}), S.COMPLETED, "complete"),
    TransferEvent.FAIL: Transition(frozenset({S.PENDING, S.DOWNLOADING, S.FAILED}), S.FAILED, "fail"),
}


def _status_of(record: Transfer) -> TransferStatus:
    return TransferStatus(record.status)


def can_transition(status: TransferStatus, event: TransferEvent) -> bool:
    return TransferStatus(status) in TRANSITIONS[event].sources


def ensure_transition(record: Transfer, event: TransferEvent) -> TransferStatus:
    """Return the target status for ``event`` or raise `InvalidTransitionError`."""
    rule = TRANSITIONS[event]
    current = _status_of(record)
    if current not in rule.sources:
        raise InvalidTransitionError(action=rule.action, current_status=current.value)
    return rule.target


def apply_transition(record: Transfer, event: TransferEvent, *, now: Optional[datetime] = None) -> TransferStatus:
    """Validate and apply ``event`` to ``record`` in memory (caller flushes)."""
    target = ensure_transition(record, event)
    record.status = target
    if TRANSITIONS[event].soft_delete:
        record.deleted_at = now or utcnow()
    return target


def can_readmit(record: Transfer) -> bool:
    """Soft-deleted rows of any status, and failed/cancelled rows, may be re-requested."""
    return record.deleted_at is not None or can_transition(_status_of(record), TransferEvent.REQUEST)


def reset_for_readmission(
    record: Transfer,
    *,
    quality: str,
    byte_size: int,
    expires_at: datetime,
) -> Transfer:
    """Turn an existing row back into a fresh ``pending`` request.

    Soft-deleted rows are reset whatever their status; live rows must pass
    the ``request`` transition.
    """
    if record.deleted_at is None:
        ensure_transition(record, TransferEvent.REQUEST)
    record.status = TransferStatus.PENDING
    record.quality = quality
    record.byte_size = int(byte_size)
    record.bytes_transferred = 0
    record.progress = 0
    record.file_path = None
    record.error_message = None
    record.retry_count = 0
    record.deleted_at = None
    record.expires_at = expires_at
    record.queue_job_id = None
    return record
