"""Checkout intent issuance.

The fulfillment contract is fixed here and travels with the Stripe session as
metadata, so the webhook never re-reads mutable product fields such as price.
"""

import logging
import time

from purchase_fulfillment.errors import (
    AlreadyOwned,
    CreatorNotPayable,
    ProductNotFound,
    SelfPurchase,
    translate_store_errors,
)
from purchase_fulfillment.logging_config import log_event
from purchase_fulfillment.models import CheckoutIntent, FulfillmentContract
from purchase_fulfillment.repositories import products_repo, users_repo
from purchase_fulfillment.services import entitlement_service

logger = logging.getLogger('purchase_fulfillment.checkout')


def build_contract(buyer_id, product, pricing_policy, now_ts=None):
    return FulfillmentContract(
        buyer_id=buyer_id,
        creator_id=product.creator_id,
        product_id=product.product_id,
        amount=product.price_amount,
        currency=product.currency or pricing_policy.default_currency,
        platform_fee_amount=pricing_policy.platform_fee_for(product.price_amount),
        created_at=int(time.time() if now_ts is None else now_ts),
    )


def check_creator_payable(db, provider, creator_id):
    """Return the creator's Connect account id, or raise CreatorNotPayable.

    A failed account lookup raises PaymentProviderError rather than counting as
    not payable.
    """
    with translate_store_errors(f"Reading creator {creator_id}"):
        account_id = users_repo.get_stripe_account_id(db, creator_id)
    if not account_id:
        raise CreatorNotPayable(f"Creator {creator_id} has no connected Stripe account")
    eligibility = provider.get_payout_eligibility(account_id)
    if not eligibility.is_payable:
        raise CreatorNotPayable(
            f"Creator {creator_id} account {account_id} is not payable "
            f"(charges_enabled={eligibility.charges_enabled}, "
            f"payouts_enabled={eligibility.payouts_enabled}, "
            f"details_submitted={eligibility.details_submitted})"
        )
    return account_id


def create_intent(buyer_id, product_id, *, db, provider, pricing_policy, success_url, cancel_url, customer_email=''):
    with translate_store_errors(f"Resolving product {product_id}"):
        product = products_repo.resolve_product(db, product_id)
    if product is None or not product.active:
        raise ProductNotFound(f"Product {product_id} not found or inactive")
    if product.creator_id == buyer_id:
        raise SelfPurchase('Creators cannot purchase their own products')

    account_id = check_creator_payable(db, provider, product.creator_id)

    if entitlement_service.has_entitlement(db, buyer_id, product.product_id):
        raise AlreadyOwned(f"{buyer_id} already owns {product.product_id}")

    contract = build_contract(buyer_id, product, pricing_policy)
    checkout_url, session_id = provider.create_checkout_session(
        contract,
        product_title=product.title,
        destination_account=account_id,
        success_url=success_url,
        cancel_url=cancel_url,
        customer_email=customer_email,
    )
    log_event(
        logger,
        logging.INFO,
        'checkout_session_created',
        session_id=session_id,
        buyer_id=buyer_id,
        product_id=product.product_id,
        creator_id=product.creator_id,
        amount=contract.amount,
        platform_fee_amount=contract.platform_fee_amount,
    )
    return CheckoutIntent(checkout_url=checkout_url, payment_reference=session_id, contract=contract)
