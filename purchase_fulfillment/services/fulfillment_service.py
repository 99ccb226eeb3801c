"""Claim-and-apply unit for one payment event.

The processed-event claim and the entitlement fan-out share a single Firestore
transaction: either the event is logged and every index reflects it, or nothing
is written and Stripe's redelivery gets a clean retry.
"""

import logging

from google.api_core.exceptions import AlreadyExists

from purchase_fulfillment.errors import AlreadyGranted, PaymentRefunded, translate_store_errors
from purchase_fulfillment.logging_config import log_event
from purchase_fulfillment.models import STATUS_FAILED, STATUS_REFUNDED, STATUS_SUCCEEDED
from purchase_fulfillment.repositories import entitlements_repo
from purchase_fulfillment.services import entitlement_service, idempotency_service

logger = logging.getLogger('purchase_fulfillment.fulfillment')

OUTCOME_GRANTED = 'granted'
OUTCOME_ALREADY_ACTIVE = 'already_active'
OUTCOME_ALREADY_GRANTED = 'already_granted'
OUTCOME_REVOKED = 'revoked'
OUTCOME_NOT_REVOKED = 'not_revoked'
OUTCOME_PAYMENT_FAILED = 'payment_failed'
OUTCOME_DUPLICATE = 'duplicate'
OUTCOME_REFUNDED_BEFORE_GRANT = 'refunded_before_grant'


def _plan(db, event, txn):
    """Reads for one event. Returns ``(outcome, entitlement_to_write, product_ref)``."""
    contract = event.contract
    if event.status == STATUS_SUCCEEDED:
        try:
            entitlement, needs_write = entitlement_service.plan_grant(
                db,
                contract,
                event.payment_reference,
                transaction=txn,
                payment_intent_id=event.payment_intent_id,
                source='webhook',
            )
        except AlreadyGranted:
            # Second payment for an owned product: log the event, write nothing.
            return OUTCOME_ALREADY_GRANTED, None, None
        except PaymentRefunded:
            # The refund event overtook this one.
            return OUTCOME_REFUNDED_BEFORE_GRANT, None, None
        if not needs_write:
            return OUTCOME_ALREADY_ACTIVE, None, None
        return OUTCOME_GRANTED, entitlement, entitlement_service.plan_sale(db, entitlement, txn)
    if event.status == STATUS_REFUNDED:
        entitlement, needs_write = entitlement_service.plan_revoke(
            db,
            contract.buyer_id,
            contract.product_id,
            transaction=txn,
            payment_intent_id=event.payment_intent_id,
        )
        return (OUTCOME_REVOKED if needs_write else OUTCOME_NOT_REVOKED), (entitlement if needs_write else None), None
    if event.status == STATUS_FAILED:
        return OUTCOME_PAYMENT_FAILED, None, None
    raise ValueError(f"Unsupported payment event status: {event.status}")


def fulfill_payment_event(db, event, *, firestore_module):
    """Apply ``event`` exactly once. Returns the outcome name.

    Raises TransientStoreFailure when the store is unavailable.
    """
    transaction = db.transaction()

    @firestore_module.transactional
    def _txn(txn):
        if not idempotency_service.is_unclaimed(db, event.event_id, txn):
            return OUTCOME_DUPLICATE
        outcome, entitlement, product_ref = _plan(db, event, txn)
        idempotency_service.stage_claim(txn, db, event.event_id, event=event, outcome=outcome)
        if outcome == OUTCOME_GRANTED:
            entitlement_service.stage_grant(
                txn, db, entitlement, product_ref=product_ref, firestore_module=firestore_module
            )
        elif entitlement is not None:
            entitlements_repo.stage_fanout(txn, db, entitlement)
        if event.status == STATUS_REFUNDED:
            # Recorded even with nothing to revoke, so a late grant is refused.
            entitlement_service.stage_refund_marker(
                txn,
                db,
                buyer_id=event.contract.buyer_id,
                product_id=event.contract.product_id,
                payment_reference=event.payment_reference,
                payment_intent_id=event.payment_intent_id,
                event_id=event.event_id,
            )
        return outcome

    try:
        with translate_store_errors(f"Fulfilling event {event.event_id}"):
            outcome = _txn(transaction)
    except AlreadyExists:
        # A concurrent delivery of the same event committed its claim first.
        outcome = OUTCOME_DUPLICATE

    log_event(
        logger,
        logging.INFO,
        'payment_event_fulfilled',
        event_id=event.event_id,
        event_type=event.event_type,
        status=event.status,
        outcome=outcome,
        buyer_id=event.contract.buyer_id,
        product_id=event.contract.product_id,
        payment_reference=event.payment_reference,
    )
    return outcome
