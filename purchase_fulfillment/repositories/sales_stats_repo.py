"""Sales counters on product and creator documents, read by the earnings dashboard."""

from . import users_repo


def stage_sale(transaction, db, entitlement, *, product_ref, firestore_module, now_ts):
    """Count one first-time sale.

    Product ``totalRevenue`` is the gross amount; the creator's is their share
    after the platform fee. Both are in major units.
    """
    creator_amount = entitlement.amount - entitlement.platform_fee_amount
    if product_ref is not None:
        transaction.set(product_ref, {
            'totalSales': firestore_module.Increment(1),
            'totalRevenue': firestore_module.Increment(entitlement.amount / 100),
            'totalRevenueCents': firestore_module.Increment(entitlement.amount),
            'lastPurchaseAt': now_ts,
        }, merge=True)
    if entitlement.creator_id:
        transaction.set(users_repo.doc_ref(db, entitlement.creator_id), {
            'totalSales': firestore_module.Increment(1),
            'totalRevenue': firestore_module.Increment(creator_amount / 100),
            'totalRevenueCents': firestore_module.Increment(creator_amount),
            'lastSaleAt': now_ts,
        }, merge=True)
