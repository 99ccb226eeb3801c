"""Processed-event claims keyed by the Stripe event id."""

import time

from google.api_core.exceptions import AlreadyExists

from purchase_fulfillment.errors import translate_store_errors
from purchase_fulfillment.repositories import processed_events_repo


def build_log_entry(event, outcome='claimed', now_ts=None):
    entry = {
        'processed_at': time.time() if now_ts is None else now_ts,
        'outcome': outcome,
    }
    if event is not None:
        entry.update({
            'event_type': event.event_type,
            'payment_reference': event.payment_reference,
            'status': event.status,
            'buyer_id': event.contract.buyer_id,
            'product_id': event.contract.product_id,
        })
    return entry


def try_claim(db, event_id, *, event=None, outcome='claimed'):
    """Claim ``event_id`` with one create() precondition write.

    Returns True the first time the id is seen and False for duplicates.
    """
    try:
        with translate_store_errors(f"Claiming event {event_id}"):
            processed_events_repo.create_doc(db, event_id, build_log_entry(event, outcome=outcome))
    except AlreadyExists:
        return False
    return True


def is_unclaimed(db, event_id, transaction):
    """Transactional read half of a claim. Must run before any staged write."""
    return not processed_events_repo.get_doc(db, event_id, transaction=transaction).exists


def stage_claim(transaction, db, event_id, *, event=None, outcome='claimed'):
    # create() fails the whole commit if a concurrent delivery claimed first.
    processed_events_repo.stage_create(transaction, db, event_id, build_log_entry(event, outcome=outcome))


def was_processed(db, event_id):
    with translate_store_errors(f"Reading event {event_id}"):
        return processed_events_repo.get_doc(db, event_id).exists
