"""Read-side handlers: purchase history and content access checks."""

from flask import jsonify

from purchase_fulfillment.errors import TransientStoreFailure
from purchase_fulfillment.services import entitlement_service


def get_purchase_history(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    if app_ctx.db is None:
        return jsonify({'purchases': []})

    uid = decoded_token['uid']
    include_revoked = str(request.args.get('include_revoked', '')).strip().lower() in {'1', 'true', 'yes'}
    try:
        entitlements = entitlement_service.list_entitlements(
            app_ctx.db,
            uid,
            limit=app_ctx.config.purchase_history_limit,
            include_revoked=include_revoked,
        )
    except TransientStoreFailure as e:
        app_ctx.logger.error(f"Error fetching purchase history: {e}")
        return jsonify({'purchases': []})

    purchases = []
    for entitlement in entitlements:
        purchases.append({
            'product_id': entitlement.product_id,
            'creator_id': entitlement.creator_id,
            'payment_reference': entitlement.payment_reference,
            'amount': entitlement.amount,
            'currency': entitlement.currency,
            'status': entitlement.status,
            'granted_at': entitlement.granted_at,
            'revoked_at': entitlement.revoked_at,
        })
    return jsonify({'purchases': purchases})


def check_access(app_ctx, request, product_id):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    if app_ctx.db is None:
        return jsonify({'error': 'Database not initialized'}), 500
    try:
        has_access = entitlement_service.has_entitlement(app_ctx.db, decoded_token['uid'], product_id)
    except TransientStoreFailure as e:
        app_ctx.logger.error(f"Access check failed for {product_id}: {e}")
        return jsonify({'error': 'Could not check access.'}), 500
    return jsonify({'product_id': product_id, 'has_access': has_access})
