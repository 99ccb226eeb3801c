"""Stripe webhook receiver: verify, normalise, fulfil.

Status mapping: 400 for deliveries that can never succeed (bad signature,
malformed fulfillment metadata), 500 for anything a redelivery could fix, 200
otherwise. There is no internal retry queue; Stripe's redelivery is the retry.
"""

import logging
import time
from dataclasses import dataclass, field

import sentry_sdk

from purchase_fulfillment.errors import (
    HandlerTimeout,
    InvalidSignature,
    MalformedContract,
    PaymentProviderError,
    TransientStoreFailure,
)
from purchase_fulfillment.logging_config import log_event
from purchase_fulfillment.models import (
    FulfillmentContract,
    PaymentEvent,
    STATUS_FAILED,
    STATUS_REFUNDED,
    STATUS_SUCCEEDED,
)
from purchase_fulfillment.services import fulfillment_service
from purchase_fulfillment.services.payment_provider import as_dict

logger = logging.getLogger('purchase_fulfillment.webhook')

CHECKOUT_COMPLETED = 'checkout.session.completed'
ASYNC_PAYMENT_SUCCEEDED = 'checkout.session.async_payment_succeeded'
ASYNC_PAYMENT_FAILED = 'checkout.session.async_payment_failed'
CHARGE_REFUNDED = 'charge.refunded'

OUTCOME_IGNORED = 'ignored'
OUTCOME_MALFORMED = 'malformed'
OUTCOME_FAILED = 'failed'


class Deadline:
    """Overall handler budget; a slow handler counts as a failed one."""

    def __init__(self, seconds, clock=time.monotonic):
        self.seconds = seconds
        self.clock = clock
        self.expires_at = clock() + seconds

    def check(self, stage):
        if self.clock() > self.expires_at:
            raise HandlerTimeout(f"Webhook handler exceeded {self.seconds}s at {stage}")


@dataclass
class WebhookResult:
    status_code: int
    outcomes: dict = field(default_factory=dict)
    error: str = ''

    def to_body(self):
        body = {'received': self.status_code == 200, 'outcomes': self.outcomes}
        if self.error:
            body['error'] = self.error
        return body


def contract_from_session(session):
    return FulfillmentContract.from_metadata(
        as_dict(session.get('metadata')),
        fallback_amount=session.get('amount_total'),
        fallback_currency=session.get('currency'),
        fallback_buyer_id=session.get('client_reference_id'),
    )


def _payment_intent_id(obj):
    payment_intent = obj.get('payment_intent') or ''
    if isinstance(payment_intent, dict):
        return payment_intent.get('id', '') or ''
    return str(payment_intent)


def parse_payment_event(event, *, provider):
    """Normalise a Stripe event into a PaymentEvent, or None for events we ignore.

    Raises MalformedContract when a relevant event carries unusable metadata.
    """
    event = as_dict(event)
    event_type = event.get('type', '')
    event_id = str(event.get('id', '') or '').strip()
    obj = as_dict((as_dict(event.get('data')) or {}).get('object'))

    if event_type in (CHECKOUT_COMPLETED, ASYNC_PAYMENT_SUCCEEDED, ASYNC_PAYMENT_FAILED):
        if event_type == CHECKOUT_COMPLETED and (obj.get('payment_status') or '').lower() != 'paid':
            # Delayed payment methods complete later via async_payment_succeeded.
            return None
        if not event_id or not obj.get('id'):
            raise MalformedContract(f"{event_type} event is missing its id")
        status = STATUS_FAILED if event_type == ASYNC_PAYMENT_FAILED else STATUS_SUCCEEDED
        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            payment_reference=obj['id'],
            status=status,
            contract=contract_from_session(obj),
            payment_intent_id=_payment_intent_id(obj),
        )

    if event_type == CHARGE_REFUNDED:
        if not obj.get('refunded'):
            # Partial refunds keep the entitlement.
            return None
        if not event_id:
            raise MalformedContract('charge.refunded event is missing its id')
        payment_intent_id = _payment_intent_id(obj)
        metadata = as_dict(obj.get('metadata'))
        if not metadata and payment_intent_id:
            payment_intent = as_dict(provider.retrieve_payment_intent(payment_intent_id))
            metadata = as_dict(payment_intent.get('metadata'))
        contract = FulfillmentContract.from_metadata(
            metadata,
            fallback_amount=obj.get('amount'),
            fallback_currency=obj.get('currency'),
            require_creator=False,
        )
        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            payment_reference=payment_intent_id or obj.get('id', ''),
            status=STATUS_REFUNDED,
            contract=contract,
            payment_intent_id=payment_intent_id,
        )

    return None


def process_events(events, *, db, provider, firestore_module, deadline):
    """Fulfil every event in a verified delivery; one bad event does not stop the rest."""
    outcomes = {}
    failures = 0
    malformed = 0
    for event in events:
        event_id = str(as_dict(event).get('id', '') or '') or f"unidentified-{len(outcomes)}"
        try:
            deadline.check('parse')
            payment_event = parse_payment_event(event, provider=provider)
            if payment_event is None:
                outcomes[event_id] = OUTCOME_IGNORED
                continue
            deadline.check('fulfill')
            outcomes[event_id] = fulfillment_service.fulfill_payment_event(
                db, payment_event, firestore_module=firestore_module
            )
        except MalformedContract as e:
            malformed += 1
            outcomes[event_id] = OUTCOME_MALFORMED
            log_event(logger, logging.ERROR, 'malformed_fulfillment_contract', event_id=event_id, error=str(e))
            sentry_sdk.capture_message(f"Malformed fulfillment contract on Stripe event {event_id}: {e}", level='error')
        except (TransientStoreFailure, PaymentProviderError) as e:
            failures += 1
            outcomes[event_id] = OUTCOME_FAILED
            log_event(logger, logging.ERROR, 'payment_event_failed', event_id=event_id, error=str(e))
    return outcomes, failures, malformed


def handle_webhook(raw_payload, signature_header, *, db, provider, firestore_module, timeout_seconds=20, clock=time.monotonic):
    if not provider.webhook_configured:
        logger.warning("⚠️ Stripe webhook rejected: STRIPE_WEBHOOK_SECRET is not configured")
        return WebhookResult(500, error='Webhook not configured')
    if db is None:
        logger.error("Stripe webhook received but Firestore is not initialized")
        return WebhookResult(500, error='Database not initialized')

    deadline = Deadline(timeout_seconds, clock=clock)
    try:
        event = provider.verify_webhook_signature(raw_payload, signature_header or '')
    except InvalidSignature as e:
        log_event(logger, logging.WARNING, 'webhook_signature_rejected', error=str(e))
        return WebhookResult(400, error='Invalid signature')

    events = event if isinstance(event, list) else [event]
    outcomes, failures, malformed = process_events(
        events,
        db=db,
        provider=provider,
        firestore_module=firestore_module,
        deadline=deadline,
    )

    if failures:
        return WebhookResult(500, outcomes=outcomes, error='Webhook processing error')
    try:
        deadline.check('respond')
    except HandlerTimeout as e:
        log_event(logger, logging.WARNING, 'webhook_handler_timeout', error=str(e))
        return WebhookResult(500, outcomes=outcomes, error='Webhook handler timed out')
    if malformed and malformed == len(events):
        return WebhookResult(400, outcomes=outcomes, error='Malformed fulfillment contract')
    return WebhookResult(200, outcomes=outcomes)
