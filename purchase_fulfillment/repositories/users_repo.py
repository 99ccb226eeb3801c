"""Firestore accessors for users collection."""

# Connect account ids were stored under different field names over time.
STRIPE_ACCOUNT_FIELDS = ('stripeAccountId', 'connectedAccountId', 'stripe_account_id')


def doc_ref(db, uid):
    return db.collection('users').document(uid)


def get_doc(db, uid):
    return doc_ref(db, uid).get()


def get_stripe_account_id(db, uid):
    snapshot = get_doc(db, uid)
    if not snapshot.exists:
        return ''
    data = snapshot.to_dict() or {}
    for field_name in STRIPE_ACCOUNT_FIELDS:
        value = str(data.get(field_name, '') or '').strip()
        if value:
            return value
    return ''
