"""Business logic handlers for payment APIs."""

from flask import jsonify

from purchase_fulfillment.errors import (
    AlreadyOwned,
    CreatorNotPayable,
    MalformedContract,
    PaymentProviderError,
    ProductNotFound,
    SelfPurchase,
    TransientStoreFailure,
)
from purchase_fulfillment.services import intent_service, reconciliation_service, webhook_service
from purchase_fulfillment.services.payment_provider import as_dict, infer_stripe_key_mode

REJECTION_STATUS = {
    ProductNotFound: 404,
    AlreadyOwned: 409,
    CreatorNotPayable: 422,
    SelfPurchase: 422,
}


def get_config(app_ctx):
    policy = app_ctx.pricing_policy()
    return jsonify({
        'stripe_publishable_key': app_ctx.config.stripe_publishable_key,
        'stripe_mode': infer_stripe_key_mode(app_ctx.config.stripe_publishable_key),
        'platform_fee_rate': str(policy.platform_fee_rate),
        'default_currency': policy.default_currency,
    })


def create_checkout_session(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return jsonify({'error': 'Please sign in to continue'}), 401
    if app_ctx.db is None:
        return jsonify({'error': 'Database not initialized'}), 500

    uid = decoded_token['uid']
    data = request.get_json(silent=True) or {}
    product_id = str(data.get('product_id') or data.get('productId') or '').strip()
    if not product_id:
        return jsonify({'error': 'Missing product_id'}), 400

    site_url = app_ctx.config.site_url
    try:
        intent = intent_service.create_intent(
            uid,
            product_id,
            db=app_ctx.db,
            provider=app_ctx.provider,
            pricing_policy=app_ctx.pricing_policy(),
            success_url=f"{site_url}/purchase-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{site_url}/product-box/{product_id}?payment=cancelled",
            customer_email=decoded_token.get('email', ''),
        )
    except tuple(REJECTION_STATUS) as e:
        app_ctx.logger.info(f"Checkout rejected for {uid} / {product_id}: {e}")
        return jsonify({'error': str(e), 'code': e.code}), REJECTION_STATUS[type(e)]
    except PaymentProviderError as e:
        app_ctx.logger.error(f"Stripe checkout error: {e}")
        return jsonify({'error': 'Could not create checkout session. Please try again.'}), 502
    except TransientStoreFailure as e:
        app_ctx.logger.error(f"Checkout store error: {e}")
        return jsonify({'error': 'Could not create checkout session. Please try again.'}), 500

    return jsonify({
        'checkout_url': intent.checkout_url,
        'session_id': intent.payment_reference,
        'amount': intent.contract.amount,
        'currency': intent.contract.currency,
        'platform_fee_amount': intent.contract.platform_fee_amount,
    })


def confirm_checkout_session(app_ctx, request):
    """Client-side "verify now": grant straight from a paid session if the webhook is late."""
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    if app_ctx.db is None:
        return jsonify({'error': 'Database not initialized'}), 500

    uid = decoded_token.get('uid', '')
    session_id = str(request.args.get('session_id', '') or '').strip()
    if not session_id:
        return jsonify({'error': 'Missing session_id'}), 400

    try:
        session = as_dict(app_ctx.provider.retrieve_session(session_id))
        try:
            contract = webhook_service.contract_from_session(session)
        except MalformedContract as e:
            app_ctx.logger.error(f"Confirm checkout session {session_id}: {e}")
            return jsonify({'error': 'Checkout session has no purchase details.'}), 400
        if contract.buyer_id != uid:
            return jsonify({'error': 'Forbidden'}), 403

        outcome = reconciliation_service.repair_session(
            app_ctx.db,
            session,
            firestore_module=app_ctx.firestore,
            source='verify',
        )
        if outcome == reconciliation_service.UNPAID:
            return jsonify({'error': 'Checkout session is not paid yet.'}), 400
        if outcome == reconciliation_service.REFUNDED:
            return jsonify({'error': 'Checkout session was refunded.', 'code': 'payment_refunded'}), 400
        status = 'granted' if outcome == reconciliation_service.REPAIRED else 'already_processed'
        return jsonify({'ok': True, 'status': status, 'product_id': contract.product_id})
    except PaymentProviderError as e:
        app_ctx.logger.error(f"Stripe confirm session error: {e}")
        return jsonify({'error': 'Could not verify checkout session.'}), 400
    except TransientStoreFailure as e:
        app_ctx.logger.error(f"Confirm checkout session error: {e}")
        return jsonify({'error': 'Could not confirm checkout session.'}), 500


def stripe_webhook(app_ctx, request):
    result = webhook_service.handle_webhook(
        request.get_data(),
        request.headers.get('Stripe-Signature', ''),
        db=app_ctx.db,
        provider=app_ctx.provider,
        firestore_module=app_ctx.firestore,
        timeout_seconds=app_ctx.config.webhook_handler_timeout_seconds,
    )
    return jsonify(result.to_body()), result.status_code
