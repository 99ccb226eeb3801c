"""Entitlement writer: transactional grant/revoke with fan-out to every purchase index.

All functions take the Firestore client and module explicitly so tests can pass
in-memory doubles. Every transactional helper does its reads first and only then
stages writes, as Firestore transactions require.
"""

import logging
import time

from purchase_fulfillment.errors import AlreadyGranted, PaymentRefunded, translate_store_errors
from purchase_fulfillment.logging_config import log_event
from purchase_fulfillment.models import ENTITLEMENT_REVOKED, Entitlement
from purchase_fulfillment.repositories import entitlements_repo, products_repo, refunds_repo, sales_stats_repo

logger = logging.getLogger('purchase_fulfillment.entitlements')


def read_current(db, buyer_id, product_id, transaction=None):
    snapshot = entitlements_repo.get_canonical(db, buyer_id, product_id, transaction=transaction)
    if not snapshot.exists:
        return None
    return Entitlement.from_document(snapshot.to_dict())


def refund_key(payment_reference, payment_intent_id=''):
    return payment_intent_id or payment_reference


def payment_was_refunded(db, payment_reference, payment_intent_id='', transaction=None):
    """True when a refund marker exists for the payment, or its legacy purchase row was revoked."""
    keys = [key for key in dict.fromkeys((payment_intent_id, payment_reference)) if key]
    for key in keys:
        if refunds_repo.get_doc(db, key, transaction=transaction).exists:
            return True
    if not payment_reference:
        return False
    # Rows revoked before refund markers existed.
    legacy = entitlements_repo.get_legacy_purchase(db, payment_reference, transaction=transaction)
    if not legacy.exists:
        return False
    return (legacy.to_dict() or {}).get('entitlementStatus') == ENTITLEMENT_REVOKED


def plan_grant(db, contract, payment_reference, *, transaction, payment_intent_id='', source='webhook'):
    """Read half of a grant. Returns ``(entitlement, needs_write)``.

    Raises AlreadyGranted when the pair is held active under another payment and
    PaymentRefunded when this payment was already refunded.
    """
    current = read_current(db, contract.buyer_id, contract.product_id, transaction=transaction)
    if current is not None and current.is_active:
        if current.payment_reference == payment_reference:
            return current, False
        raise AlreadyGranted(
            f"{contract.buyer_id} already holds {contract.product_id} via {current.payment_reference}"
        )
    if payment_was_refunded(db, payment_reference, payment_intent_id, transaction=transaction):
        raise PaymentRefunded(f"Payment {refund_key(payment_reference, payment_intent_id)} was refunded")
    entitlement = Entitlement.from_contract(
        contract,
        payment_reference,
        payment_intent_id=payment_intent_id,
        source=source,
    )
    return entitlement, True


def plan_sale(db, entitlement, transaction):
    """Read half of the sales counters: the product document to count against."""
    return products_repo.find_product_ref(db, entitlement.product_id, transaction=transaction)


def stage_grant(transaction, db, entitlement, *, product_ref, firestore_module):
    entitlements_repo.stage_fanout(transaction, db, entitlement)
    sales_stats_repo.stage_sale(
        transaction,
        db,
        entitlement,
        product_ref=product_ref,
        firestore_module=firestore_module,
        now_ts=entitlement.granted_at,
    )


def stage_refund_marker(transaction, db, *, buyer_id, product_id, payment_reference, payment_intent_id='', event_id=''):
    key = refund_key(payment_reference, payment_intent_id)
    if not key:
        return
    refunds_repo.stage_marker(transaction, db, key, {
        'buyerId': buyer_id,
        'productId': product_id,
        'paymentReference': payment_reference,
        'paymentIntentId': payment_intent_id,
        'eventId': event_id,
        'refundedAt': time.time(),
    })


def plan_revoke(db, buyer_id, product_id, *, transaction, payment_intent_id=''):
    """Read half of a revoke. Returns ``(entitlement, needs_write)``.

    With ``payment_intent_id`` set, an entitlement recorded against a different
    payment intent is left alone: a late refund of an older purchase must not
    revoke a newer one.
    """
    current = read_current(db, buyer_id, product_id, transaction=transaction)
    if current is None or not current.is_active:
        return current, False
    if payment_intent_id and current.payment_intent_id and current.payment_intent_id != payment_intent_id:
        return current, False
    return current.revoked(), True


def ensure_granted(db, contract, payment_reference, *, firestore_module, payment_intent_id='', source='reconcile'):
    """Grant in its own transaction. Returns ``(entitlement, created)``."""
    transaction = db.transaction()

    @firestore_module.transactional
    def _txn(txn):
        entitlement, needs_write = plan_grant(
            db,
            contract,
            payment_reference,
            transaction=txn,
            payment_intent_id=payment_intent_id,
            source=source,
        )
        if needs_write:
            product_ref = plan_sale(db, entitlement, txn)
            stage_grant(txn, db, entitlement, product_ref=product_ref, firestore_module=firestore_module)
        return entitlement, needs_write

    with translate_store_errors(f"Granting {contract.product_id} to {contract.buyer_id}"):
        entitlement, created = _txn(transaction)
    if created:
        log_event(
            logger,
            logging.INFO,
            'entitlement_granted',
            buyer_id=entitlement.buyer_id,
            product_id=entitlement.product_id,
            payment_reference=payment_reference,
            source=source,
        )
    return entitlement, created


def grant(db, contract, payment_reference, *, firestore_module, payment_intent_id='', source='reconcile'):
    entitlement, _created = ensure_granted(
        db,
        contract,
        payment_reference,
        firestore_module=firestore_module,
        payment_intent_id=payment_intent_id,
        source=source,
    )
    return entitlement


def revoke(db, buyer_id, product_id, *, firestore_module, payment_intent_id=''):
    """Mark the pair revoked on every index. Missing or already revoked is a no-op.

    With ``payment_intent_id`` a refund marker is recorded even when there is
    nothing to revoke, so a later grant for that payment is refused.
    """
    transaction = db.transaction()

    @firestore_module.transactional
    def _txn(txn):
        entitlement, needs_write = plan_revoke(
            db, buyer_id, product_id, transaction=txn, payment_intent_id=payment_intent_id
        )
        if needs_write:
            entitlements_repo.stage_fanout(txn, db, entitlement)
        if payment_intent_id:
            stage_refund_marker(
                txn,
                db,
                buyer_id=buyer_id,
                product_id=product_id,
                payment_reference=payment_intent_id,
                payment_intent_id=payment_intent_id,
            )
        return entitlement, needs_write

    with translate_store_errors(f"Revoking {product_id} from {buyer_id}"):
        entitlement, revoked = _txn(transaction)
    if revoked:
        log_event(logger, logging.INFO, 'entitlement_revoked', buyer_id=buyer_id, product_id=product_id)
    return entitlement


def has_entitlement(db, buyer_id, product_id):
    if not buyer_id or not product_id:
        return False
    with translate_store_errors(f"Reading entitlement {buyer_id}/{product_id}"):
        current = read_current(db, buyer_id, product_id)
    return current is not None and current.is_active


def list_entitlements(db, buyer_id, limit=50, include_revoked=False):
    with translate_store_errors(f"Listing entitlements for {buyer_id}"):
        docs = entitlements_repo.list_by_buyer(db, buyer_id, limit)
    entitlements = [Entitlement.from_document(doc.to_dict()) for doc in docs]
    if not include_revoked:
        entitlements = [e for e in entitlements if e.is_active]
    entitlements.sort(key=lambda e: e.granted_at or 0, reverse=True)
    return entitlements
