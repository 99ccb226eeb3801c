"""Firestore accessors for entitlements and the purchase indexes they fan out to.

One logical entitlement is written to every index the read side still queries:

* ``entitlements/{buyer}__{product}``: canonical document, one per pair.
* ``bundlePurchases/{paymentReference}``: legacy global collection, queried by ``buyerUid``.
* ``users/{buyer}/purchases/{paymentReference}``: legacy per-buyer subcollection.
"""

from dataclasses import dataclass
from typing import Callable

from purchase_fulfillment.models import ENTITLEMENT_ACTIVE, entitlement_key

from .query_utils import apply_where

CANONICAL_COLLECTION = 'entitlements'
LEGACY_GLOBAL_COLLECTION = 'bundlePurchases'
USERS_COLLECTION = 'users'
USER_PURCHASES_SUBCOLLECTION = 'purchases'


@dataclass(frozen=True)
class EntitlementIndex:
    name: str
    doc_ref: Callable
    to_document: Callable


def canonical_doc_ref(db, buyer_id, product_id):
    return db.collection(CANONICAL_COLLECTION).document(entitlement_key(buyer_id, product_id))


def _canonical_ref(db, entitlement):
    return canonical_doc_ref(db, entitlement.buyer_id, entitlement.product_id)


def _legacy_global_ref(db, entitlement):
    return db.collection(LEGACY_GLOBAL_COLLECTION).document(entitlement.payment_reference)


def _user_purchase_ref(db, entitlement):
    return (
        db.collection(USERS_COLLECTION)
        .document(entitlement.buyer_id)
        .collection(USER_PURCHASES_SUBCOLLECTION)
        .document(entitlement.payment_reference)
    )


def _legacy_purchase_document(entitlement):
    # Older readers expect decimal prices and "completed" for owned purchases.
    return {
        'id': entitlement.payment_reference,
        'sessionId': entitlement.payment_reference,
        'paymentIntentId': entitlement.payment_intent_id,
        'buyerUid': entitlement.buyer_id,
        'userId': entitlement.buyer_id,
        'bundleId': entitlement.product_id,
        'productBoxId': entitlement.product_id,
        'itemId': entitlement.product_id,
        'creatorId': entitlement.creator_id,
        'amount': entitlement.amount / 100,
        'purchaseAmount': entitlement.amount,
        'platformFeeAmount': entitlement.platform_fee_amount,
        'currency': entitlement.currency,
        'status': 'completed' if entitlement.status == ENTITLEMENT_ACTIVE else entitlement.status,
        'entitlementStatus': entitlement.status,
        'purchasedAt': entitlement.granted_at,
        'revokedAt': entitlement.revoked_at,
        'source': entitlement.source,
    }


ENTITLEMENT_INDEXES = (
    EntitlementIndex('entitlements', _canonical_ref, lambda entitlement: entitlement.to_document()),
    EntitlementIndex('bundlePurchases', _legacy_global_ref, _legacy_purchase_document),
    EntitlementIndex('userPurchases', _user_purchase_ref, _legacy_purchase_document),
)


def get_canonical(db, buyer_id, product_id, transaction=None):
    ref = canonical_doc_ref(db, buyer_id, product_id)
    if transaction is not None:
        return ref.get(transaction=transaction)
    return ref.get()


def stage_fanout(transaction, db, entitlement, indexes=ENTITLEMENT_INDEXES):
    """Stage the entitlement on every index. Nothing is written until commit."""
    for index in indexes:
        transaction.set(index.doc_ref(db, entitlement), index.to_document(entitlement), merge=True)


def list_by_buyer(db, buyer_id, limit):
    query = apply_where(db.collection(CANONICAL_COLLECTION), 'buyerId', '==', buyer_id).limit(limit)
    return list(query.stream())


def get_legacy_purchase(db, payment_reference, transaction=None):
    ref = db.collection(LEGACY_GLOBAL_COLLECTION).document(payment_reference)
    if transaction is not None:
        return ref.get(transaction=transaction)
    return ref.get()
