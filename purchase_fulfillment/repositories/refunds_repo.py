"""Firestore accessors for refund markers.

A marker is written for every full refund, keyed by payment intent, whether or
not an entitlement existed yet. Grants consult it so a refunded payment never
produces access, even when the refund event arrives first.
"""

COLLECTION = 'refunded_payments'


def doc_ref(db, refund_key):
    return db.collection(COLLECTION).document(refund_key)


def get_doc(db, refund_key, transaction=None):
    if transaction is not None:
        return doc_ref(db, refund_key).get(transaction=transaction)
    return doc_ref(db, refund_key).get()


def stage_marker(transaction, db, refund_key, data):
    transaction.set(doc_ref(db, refund_key), data, merge=True)
