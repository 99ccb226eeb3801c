"""Value types shared by the checkout, webhook and reconciliation flows."""

import time
from dataclasses import dataclass, field, replace
from typing import Optional

from purchase_fulfillment.errors import MalformedContract

CONTRACT_VERSION = '1'
LEGACY_CONTRACT_VERSION = 'legacy'

STATUS_SUCCEEDED = 'succeeded'
STATUS_FAILED = 'failed'
STATUS_REFUNDED = 'refunded'

ENTITLEMENT_ACTIVE = 'active'
ENTITLEMENT_REVOKED = 'revoked'

# Older checkouts wrote these keys instead of buyerId/productId.
LEGACY_BUYER_KEYS = ('buyer_user_id', 'buyerUid', 'firebaseUid', 'userId')
LEGACY_PRODUCT_KEYS = ('bundleId', 'productBoxId')


def _clean(value):
    return str(value or '').strip()


def _parse_amount(metadata, key, fallback=None):
    raw = _clean(metadata.get(key))
    if not raw:
        if fallback is None:
            raise MalformedContract(f'Missing {key} in fulfillment metadata')
        raw = str(fallback)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise MalformedContract(f'{key} is not an integer: {raw!r}')
    if value < 0:
        raise MalformedContract(f'{key} must be non-negative, got {value}')
    return value


@dataclass(frozen=True)
class FulfillmentContract:
    buyer_id: str
    creator_id: str
    product_id: str
    amount: int
    currency: str
    platform_fee_amount: int
    created_at: int = field(default_factory=lambda: int(time.time()))
    contract_version: str = CONTRACT_VERSION

    @property
    def creator_amount(self):
        return self.amount - self.platform_fee_amount

    def to_metadata(self):
        return {
            'buyerId': self.buyer_id,
            'creatorId': self.creator_id,
            'productId': self.product_id,
            'amount': str(self.amount),
            'currency': self.currency,
            'platformFeeAmount': str(self.platform_fee_amount),
            'createdAt': str(self.created_at),
            'contractVersion': self.contract_version,
        }

    @classmethod
    def from_metadata(cls, metadata, *, fallback_amount=None, fallback_currency=None, fallback_buyer_id=None, require_creator=True):
        """Parse metadata attached at checkout. Raises MalformedContract.

        Refunds only need the buyer and product, so they pass ``require_creator=False``.
        """
        if not isinstance(metadata, dict):
            try:
                metadata = dict(metadata or {})
            except (TypeError, ValueError):
                raise MalformedContract('Fulfillment metadata is not a mapping')
        if not metadata:
            raise MalformedContract('Fulfillment metadata is missing')

        if _clean(metadata.get('contractVersion')) == CONTRACT_VERSION:
            buyer_id = _clean(metadata.get('buyerId'))
            product_id = _clean(metadata.get('productId'))
            creator_id = _clean(metadata.get('creatorId'))
            if not buyer_id or not product_id or (require_creator and not creator_id):
                raise MalformedContract('Fulfillment metadata is missing buyerId, productId or creatorId')
            amount = _parse_amount(metadata, 'amount')
            fee = _parse_amount(metadata, 'platformFeeAmount')
            currency = _clean(metadata.get('currency')).lower()
            if not currency:
                raise MalformedContract('Missing currency in fulfillment metadata')
            created_at = _parse_amount(metadata, 'createdAt', fallback=0)
            version = CONTRACT_VERSION
        else:
            buyer_id = next((_clean(metadata.get(k)) for k in LEGACY_BUYER_KEYS if _clean(metadata.get(k))), '')
            buyer_id = buyer_id or _clean(fallback_buyer_id)
            product_id = next((_clean(metadata.get(k)) for k in LEGACY_PRODUCT_KEYS if _clean(metadata.get(k))), '')
            creator_id = _clean(metadata.get('creatorId'))
            if not buyer_id or not product_id or (require_creator and not creator_id):
                raise MalformedContract('Legacy metadata is missing buyer, product or creator id')
            amount = _parse_amount(metadata, 'amount', fallback=fallback_amount)
            fee = _parse_amount(metadata, 'platformFeeAmount', fallback=0)
            currency = (_clean(metadata.get('currency')) or _clean(fallback_currency)).lower()
            if not currency:
                raise MalformedContract('Legacy metadata has no currency')
            created_at = 0
            version = LEGACY_CONTRACT_VERSION

        if fee > amount:
            raise MalformedContract(f'platformFeeAmount {fee} exceeds amount {amount}')
        return cls(
            buyer_id=buyer_id,
            creator_id=creator_id,
            product_id=product_id,
            amount=amount,
            currency=currency,
            platform_fee_amount=fee,
            created_at=created_at,
            contract_version=version,
        )


@dataclass(frozen=True)
class PaymentEvent:
    event_id: str
    event_type: str
    payment_reference: str
    status: str
    contract: FulfillmentContract
    payment_intent_id: str = ''
    received_at: float = field(default_factory=time.time)


@dataclass
class Entitlement:
    buyer_id: str
    product_id: str
    creator_id: str
    payment_reference: str
    amount: int
    currency: str
    platform_fee_amount: int = 0
    payment_intent_id: str = ''
    granted_at: float = 0.0
    status: str = ENTITLEMENT_ACTIVE
    revoked_at: Optional[float] = None
    source: str = 'webhook'

    @property
    def is_active(self):
        return self.status == ENTITLEMENT_ACTIVE

    @property
    def key(self):
        return entitlement_key(self.buyer_id, self.product_id)

    @classmethod
    def from_contract(cls, contract, payment_reference, *, payment_intent_id='', source='webhook', granted_at=None):
        return cls(
            buyer_id=contract.buyer_id,
            product_id=contract.product_id,
            creator_id=contract.creator_id,
            payment_reference=payment_reference,
            amount=contract.amount,
            currency=contract.currency,
            platform_fee_amount=contract.platform_fee_amount,
            payment_intent_id=payment_intent_id or '',
            granted_at=time.time() if granted_at is None else granted_at,
            source=source,
        )

    def revoked(self, revoked_at=None):
        return replace(
            self,
            status=ENTITLEMENT_REVOKED,
            revoked_at=time.time() if revoked_at is None else revoked_at,
        )

    def to_document(self):
        return {
            'buyerId': self.buyer_id,
            'productId': self.product_id,
            'creatorId': self.creator_id,
            'paymentReference': self.payment_reference,
            'paymentIntentId': self.payment_intent_id,
            'amount': self.amount,
            'currency': self.currency,
            'platformFeeAmount': self.platform_fee_amount,
            'grantedAt': self.granted_at,
            'status': self.status,
            'revokedAt': self.revoked_at,
            'source': self.source,
        }

    @classmethod
    def from_document(cls, data):
        data = data or {}
        return cls(
            buyer_id=data.get('buyerId', ''),
            product_id=data.get('productId', ''),
            creator_id=data.get('creatorId', ''),
            payment_reference=data.get('paymentReference', ''),
            payment_intent_id=data.get('paymentIntentId', '') or '',
            amount=int(data.get('amount', 0) or 0),
            currency=data.get('currency', '') or '',
            platform_fee_amount=int(data.get('platformFeeAmount', 0) or 0),
            granted_at=data.get('grantedAt', 0) or 0,
            status=data.get('status', ENTITLEMENT_ACTIVE) or ENTITLEMENT_ACTIVE,
            revoked_at=data.get('revokedAt'),
            source=data.get('source', '') or '',
        )


def entitlement_key(buyer_id, product_id):
    return f"{buyer_id}__{product_id}"


@dataclass(frozen=True)
class CanonicalProduct:
    product_id: str
    creator_id: str
    title: str
    price_amount: int
    currency: str
    active: bool
    source_collection: str


@dataclass(frozen=True)
class PayoutEligibility:
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False

    @property
    def is_payable(self):
        return self.charges_enabled and self.payouts_enabled and self.details_submitted


@dataclass(frozen=True)
class CheckoutIntent:
    checkout_url: str
    payment_reference: str
    contract: FulfillmentContract
