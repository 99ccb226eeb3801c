from flask import Blueprint, request

from purchase_fulfillment.extensions import get_runtime
from purchase_fulfillment.services import payments_api_service

payments_bp = Blueprint('payments_api', __name__)


@payments_bp.route('/api/config', methods=['GET'])
def get_config():
    return payments_api_service.get_config(get_runtime())


@payments_bp.route('/api/create-checkout-session', methods=['POST'])
def create_checkout_session():
    return payments_api_service.create_checkout_session(get_runtime(), request)


@payments_bp.route('/api/confirm-checkout-session', methods=['GET'])
def confirm_checkout_session():
    return payments_api_service.confirm_checkout_session(get_runtime(), request)


@payments_bp.route('/api/stripe-webhook', methods=['POST'])
def stripe_webhook():
    return payments_api_service.stripe_webhook(get_runtime(), request)
