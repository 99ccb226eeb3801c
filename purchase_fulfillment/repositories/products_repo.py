"""Product lookup across the collections products have lived in.

Each adapter is a pure function ``(product_id, raw_doc) -> CanonicalProduct | None``.
``resolve_product`` tries ``PRODUCT_SOURCES`` in order and returns the first hit.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from purchase_fulfillment.models import CanonicalProduct

INACTIVE_STATUSES = {'archived', 'deleted', 'draft', 'inactive'}


def dollars_to_cents(value):
    try:
        cents = (Decimal(str(value)) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None
    if cents < 0:
        return None
    return int(cents)


def _as_cents(value):
    try:
        cents = int(value)
    except (TypeError, ValueError):
        return None
    return cents if cents >= 0 else None


def _is_active(raw):
    if raw.get('active') is False or raw.get('isActive') is False:
        return False
    status = str(raw.get('status', '') or '').strip().lower()
    return status not in INACTIVE_STATUSES


def _creator_of(raw):
    return str(raw.get('creatorId') or raw.get('creatorUid') or raw.get('userId') or '').strip()


def product_box_adapter(product_id, raw):
    creator_id = _creator_of(raw)
    price = dollars_to_cents(raw.get('price')) if raw.get('price') is not None else None
    if not creator_id or price is None:
        return None
    return CanonicalProduct(
        product_id=product_id,
        creator_id=creator_id,
        title=raw.get('title') or 'Untitled product box',
        price_amount=price,
        currency=str(raw.get('currency') or 'usd').lower(),
        active=_is_active(raw),
        source_collection='productBoxes',
    )


def bundle_adapter(product_id, raw):
    creator_id = _creator_of(raw)
    if raw.get('priceInCents') is not None:
        price = _as_cents(raw.get('priceInCents'))
    elif raw.get('price') is not None:
        price = dollars_to_cents(raw.get('price'))
    else:
        price = None
    if not creator_id or price is None:
        return None
    return CanonicalProduct(
        product_id=product_id,
        creator_id=creator_id,
        title=raw.get('title') or 'Untitled bundle',
        price_amount=price,
        currency=str(raw.get('currency') or 'usd').lower(),
        active=_is_active(raw),
        source_collection='bundles',
    )


def creator_product_box_adapter(product_id, raw):
    creator_id = _creator_of(raw)
    price = _as_cents(raw.get('amount'))
    if not creator_id or price is None:
        return None
    return CanonicalProduct(
        product_id=product_id,
        creator_id=creator_id,
        title=raw.get('name') or raw.get('title') or 'Untitled product',
        price_amount=price,
        currency=str(raw.get('currency') or 'usd').lower(),
        active=_is_active(raw),
        source_collection='creator_product_boxes',
    )


PRODUCT_SOURCES = (
    ('productBoxes', product_box_adapter),
    ('bundles', bundle_adapter),
    ('creator_product_boxes', creator_product_box_adapter),
)


def resolve_product(db, product_id, sources=PRODUCT_SOURCES):
    for collection_name, adapter in sources:
        snapshot = db.collection(collection_name).document(product_id).get()
        if not snapshot.exists:
            continue
        product = adapter(product_id, snapshot.to_dict() or {})
        if product is not None:
            return product
    return None


def find_product_ref(db, product_id, transaction=None, sources=PRODUCT_SOURCES):
    """Reference to the first existing product document, or None."""
    for collection_name, _adapter in sources:
        ref = db.collection(collection_name).document(product_id)
        snapshot = ref.get(transaction=transaction) if transaction is not None else ref.get()
        if snapshot.exists:
            return ref
    return None
