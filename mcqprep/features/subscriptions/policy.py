"""
Arbitration between the user's current subscription rows and an incoming draft.

Pure function, no I/O. apply_transition reads the rows under the user lock,
asks arbitrate() what to do, and performs the write.

Decisions:
- refresh:    the draft names the active row itself (same provider purchase,
              or an explicit target row id)
- stale:      the draft names a row that is no longer active while another row
              (or nothing still running) holds the slot; only the provider
              status is mirrored
- reactivate: the draft names a row that lapsed at the end of its period,
              nothing is active and the draft's period is still running
              (renewal after lapse); any other closed row stays closed
- create:     no active row, new purchase/grant
- replace:    a different active row exists; it is closed and the draft inserted
- suppress:   a reward/trial grant would cut short a paid row that runs longer
"""
from datetime import datetime
from typing import Optional

from mcqprep.features.subscriptions.models import (
    ClosureReason,
    SubscriptionDraft,
    SubscriptionRecord,
    TransitionOutcome,
)


def arbitrate(
    active: Optional[SubscriptionRecord],
    matching: Optional[SubscriptionRecord],
    draft: SubscriptionDraft,
    now: datetime,
) -> TransitionOutcome:
    """
    Args:
        active: the user's currently active row, if any
        matching: the row the draft refers to (same provider purchase, or the
            explicit target id), if one already exists
        draft: the incoming desired state
        now: decision instant (UTC)
    """
    if matching is not None:
        if matching.is_active:
            return TransitionOutcome.REFRESH
        if active is None and draft.end_date > now and can_reactivate(matching):
            return TransitionOutcome.REACTIVATE
        return TransitionOutcome.STALE

    if active is None:
        return TransitionOutcome.CREATE

    if should_suppress(active, draft):
        return TransitionOutcome.SUPPRESS

    return TransitionOutcome.REPLACE


def can_reactivate(record: SubscriptionRecord) -> bool:
    """Only a lapse is undone by a renewal."""
    return record.closed_reason == ClosureReason.EXPIRED and not record.provider_ended


def should_suppress(active: SubscriptionRecord, draft: SubscriptionDraft) -> bool:
    """A complimentary grant never shortens a paid entitlement."""
    return (
        draft.is_complimentary
        and active.is_paid
        and active.end_date > draft.end_date
    )
