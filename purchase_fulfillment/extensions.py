"""Runtime services (Firestore, Firebase Auth, Stripe, Sentry) attached to the Flask app."""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any

import firebase_admin
import sentry_sdk
import stripe
from firebase_admin import auth, credentials, firestore
from flask import current_app
from sentry_sdk.integrations.flask import FlaskIntegration

from purchase_fulfillment.config import AppConfig
from purchase_fulfillment.services import auth_service
from purchase_fulfillment.services.payment_provider import StripePaymentProvider

EXTENSION_KEY = 'purchase_fulfillment'
logger = logging.getLogger('purchase_fulfillment')


@dataclass
class FulfillmentRuntime:
    """What request handlers need, bundled so tests can swap in doubles."""

    config: AppConfig
    db: Any
    firestore: Any
    auth: Any
    provider: Any
    logger: logging.Logger
    firebase_init_error: str = ''

    def verify_firebase_token(self, request):
        return auth_service.verify_firebase_token(request, auth_module=self.auth, logger=self.logger)

    def is_admin_user(self, decoded_token):
        return auth_service.is_admin_user(
            decoded_token,
            admin_uids=self.config.admin_uids,
            admin_emails=self.config.admin_emails,
        )

    def pricing_policy(self):
        return self.config.pricing_policy()


def init_firestore():
    """Return (client, error). Missing credentials leave the client unset."""
    try:
        if os.path.exists('firebase-credentials.json'):
            cred = credentials.Certificate('firebase-credentials.json')
        else:
            firebase_creds_raw = (os.getenv('FIREBASE_CREDENTIALS', '') or '').strip()
            if not firebase_creds_raw:
                raise ValueError("FIREBASE_CREDENTIALS is not set and firebase-credentials.json was not found.")
            cred = credentials.Certificate(json.loads(firebase_creds_raw))
        if not firebase_admin._apps:
            firebase_admin.initialize_app(cred)
        return firestore.client(), ''
    except Exception as e:
        logger.info(f"⚠️ Firebase initialization skipped: {e}")
        return None, str(e)


def init_sentry(config):
    if not config.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=config.sentry_traces_sample_rate,
        send_default_pii=False,
        environment=config.sentry_environment,
        release=config.sentry_release,
    )
    return True


def init_extensions(app, config, *, db=None, firestore_module=None, auth_module=None, provider=None) -> FulfillmentRuntime:
    firebase_init_error = ''
    if db is None:
        db, firebase_init_error = init_firestore()
    if provider is None:
        stripe.api_key = config.stripe_secret_key or None
        provider = StripePaymentProvider(webhook_secret=config.stripe_webhook_secret)
    init_sentry(config)

    runtime = FulfillmentRuntime(
        config=config,
        db=db,
        firestore=firestore_module or firestore,
        auth=auth_module or auth,
        provider=provider,
        logger=logger,
        firebase_init_error=firebase_init_error,
    )
    app.extensions[EXTENSION_KEY] = runtime
    return runtime


def get_runtime(app=None) -> FulfillmentRuntime:
    return (app or current_app).extensions[EXTENSION_KEY]
