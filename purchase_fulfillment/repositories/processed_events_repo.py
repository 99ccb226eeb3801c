"""Firestore accessors for the processed payment event log."""

COLLECTION = 'processed_payment_events'


def doc_ref(db, event_id):
    return db.collection(COLLECTION).document(event_id)


def get_doc(db, event_id, transaction=None):
    if transaction is not None:
        return doc_ref(db, event_id).get(transaction=transaction)
    return doc_ref(db, event_id).get()


def create_doc(db, event_id, data):
    """Create the log entry; raises AlreadyExists when the event was seen before."""
    return doc_ref(db, event_id).create(data)


def stage_create(transaction, db, event_id, data):
    return transaction.create(doc_ref(db, event_id), data)
