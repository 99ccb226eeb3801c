"""Stripe-backed payment provider and Connect account status lookups."""

import stripe

from purchase_fulfillment.errors import InvalidSignature, PaymentProviderError
from purchase_fulfillment.models import PayoutEligibility


def as_dict(stripe_object):
    if stripe_object is None:
        return {}
    if isinstance(stripe_object, dict):
        return stripe_object
    to_dict = getattr(stripe_object, 'to_dict', None)
    if callable(to_dict):
        return to_dict()
    return dict(stripe_object)


def infer_stripe_key_mode(key_value):
    key = str(key_value or '').strip()
    if not key:
        return 'missing'
    if key.startswith('sk_live_') or key.startswith('pk_live_') or key.startswith('rk_live_'):
        return 'live'
    if key.startswith('sk_test_') or key.startswith('pk_test_') or key.startswith('rk_test_'):
        return 'test'
    return 'unknown'


class StripePaymentProvider:
    """Thin wrapper over the Stripe SDK calls the fulfillment flows need."""

    def __init__(self, webhook_secret='', stripe_module=stripe):
        self.stripe = stripe_module
        self.webhook_secret = webhook_secret or ''

    @property
    def webhook_configured(self):
        return bool(self.webhook_secret)

    def create_checkout_session(self, contract, *, product_title, destination_account, success_url, cancel_url, customer_email=''):
        metadata = contract.to_metadata()
        params = {
            'mode': 'payment',
            'line_items': [{
                'price_data': {
                    'currency': contract.currency,
                    'product_data': {'name': product_title},
                    'unit_amount': contract.amount,
                },
                'quantity': 1,
            }],
            'success_url': success_url,
            'cancel_url': cancel_url,
            'client_reference_id': contract.buyer_id,
            'metadata': metadata,
            'payment_intent_data': {
                'application_fee_amount': contract.platform_fee_amount,
                'transfer_data': {'destination': destination_account},
                'metadata': metadata,
            },
        }
        if customer_email:
            params['customer_email'] = customer_email
        try:
            session = self.stripe.checkout.Session.create(**params)
        except self.stripe.StripeError as e:
            raise PaymentProviderError(f"Could not create checkout session: {e}") from e
        return session.get('url', ''), session.get('id', '')

    def verify_webhook_signature(self, payload, signature_header):
        try:
            return self.stripe.Webhook.construct_event(payload, signature_header, self.webhook_secret)
        except ValueError as e:
            raise InvalidSignature('Invalid payload') from e
        except self.stripe.SignatureVerificationError as e:
            raise InvalidSignature(str(e)) from e

    def retrieve_session(self, session_id):
        try:
            return self.stripe.checkout.Session.retrieve(session_id)
        except self.stripe.StripeError as e:
            raise PaymentProviderError(f"Could not retrieve checkout session {session_id}: {e}") from e

    def retrieve_payment_intent(self, payment_intent_id):
        try:
            return self.stripe.PaymentIntent.retrieve(payment_intent_id)
        except self.stripe.StripeError as e:
            raise PaymentProviderError(f"Could not retrieve payment intent {payment_intent_id}: {e}") from e

    def list_completed_sessions(self, since, page_size=100):
        """Yield completed checkout sessions created at or after ``since``, page by page."""
        try:
            page = self.stripe.checkout.Session.list(
                created={'gte': int(since)},
                status='complete',
                limit=page_size,
            )
            for session in page.auto_paging_iter():
                yield session
        except self.stripe.StripeError as e:
            raise PaymentProviderError(f"Could not list checkout sessions: {e}") from e

    def get_payout_eligibility(self, account_id):
        try:
            account = self.stripe.Account.retrieve(account_id)
        except self.stripe.StripeError as e:
            raise PaymentProviderError(f"Could not retrieve connected account {account_id}: {e}") from e
        return PayoutEligibility(
            charges_enabled=bool(account.get('charges_enabled')),
            payouts_enabled=bool(account.get('payouts_enabled')),
            details_submitted=bool(account.get('details_submitted')),
        )
