"""Repair path for paid checkouts that never produced an entitlement.

Safe to run repeatedly: grants go through the entitlement writer, which is a
no-op for pairs already held under the same payment. Restart a long run from
``ReconcileResult.last_created``.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

from purchase_fulfillment.errors import (
    AlreadyGranted,
    BusinessRuleRejection,
    MalformedContract,
    PaymentProviderError,
    PaymentRefunded,
    TransientStoreFailure,
    translate_store_errors,
)
from purchase_fulfillment.logging_config import log_event
from purchase_fulfillment.services import entitlement_service
from purchase_fulfillment.services.payment_provider import as_dict
from purchase_fulfillment.services.webhook_service import contract_from_session

logger = logging.getLogger('purchase_fulfillment.reconcile')

REPAIRED = 'repaired'
SKIPPED = 'skipped'
UNPAID = 'unpaid'
REFUNDED = 'refunded'
MAX_REPORTED_ERRORS = 50


@dataclass
class ReconcileResult:
    scanned: int = 0
    repaired: int = 0
    failed: int = 0
    skipped: int = 0
    last_created: Optional[int] = None
    interrupted: bool = False
    dry_run: bool = False
    errors: list = field(default_factory=list)

    def record_error(self, session_id, message):
        self.failed += 1
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append({'session_id': session_id, 'error': message})

    def to_dict(self):
        return asdict(self)


def session_is_paid(session):
    return (session.get('payment_status') or '').lower() == 'paid'


def needs_repair(current, session_id, payment_intent_id=''):
    if current is None:
        return bool(session_id)
    if current.is_active:
        return False
    # Revoked under this very payment means it was refunded; never re-grant it.
    if current.payment_reference == session_id:
        return False
    if payment_intent_id and current.payment_intent_id == payment_intent_id:
        return False
    return True


def repair_session(db, session, *, firestore_module, source='reconcile', dry_run=False):
    """Grant the entitlement a paid session should have produced.

    Returns ``repaired``, ``skipped``, ``refunded`` or ``unpaid``. Raises MalformedContract for
    sessions without usable metadata and TransientStoreFailure on store errors.
    """
    session = as_dict(session)
    session_id = session.get('id', '')
    if not session_is_paid(session):
        return UNPAID
    contract = contract_from_session(session)
    payment_intent_id = session.get('payment_intent') or ''
    if isinstance(payment_intent_id, dict):
        payment_intent_id = payment_intent_id.get('id', '')

    with translate_store_errors(f"Reading entitlement for session {session_id}"):
        current = entitlement_service.read_current(db, contract.buyer_id, contract.product_id)
    if not needs_repair(current, session_id, payment_intent_id):
        return SKIPPED
    with translate_store_errors(f"Reading refunds for session {session_id}"):
        refunded = entitlement_service.payment_was_refunded(db, session_id, payment_intent_id)
    if refunded:
        return REFUNDED
    if dry_run:
        return REPAIRED

    try:
        _entitlement, created = entitlement_service.ensure_granted(
            db,
            contract,
            session_id,
            firestore_module=firestore_module,
            payment_intent_id=payment_intent_id,
            source=source,
        )
    except AlreadyGranted:
        return SKIPPED
    except PaymentRefunded:
        return REFUNDED
    return REPAIRED if created else SKIPPED


def reconcile(since_timestamp, *, db, provider, firestore_module, page_size=100, limit=None, dry_run=False):
    result = ReconcileResult(dry_run=dry_run)
    log_event(logger, logging.INFO, 'reconcile_started', since=since_timestamp, dry_run=dry_run, limit=limit)

    try:
        for session in provider.list_completed_sessions(since_timestamp, page_size=page_size):
            if limit is not None and result.scanned >= limit:
                break
            session = as_dict(session)
            session_id = session.get('id', '')
            result.scanned += 1
            created = int(session.get('created') or 0)
            if created and (result.last_created is None or created > result.last_created):
                result.last_created = created

            try:
                outcome = repair_session(db, session, firestore_module=firestore_module, dry_run=dry_run)
            except MalformedContract as e:
                result.record_error(session_id, f"malformed contract: {e}")
                log_event(logger, logging.WARNING, 'reconcile_malformed_session', session_id=session_id, error=str(e))
                continue
            except (TransientStoreFailure, PaymentProviderError, BusinessRuleRejection) as e:
                result.record_error(session_id, str(e))
                log_event(logger, logging.ERROR, 'reconcile_session_failed', session_id=session_id, error=str(e))
                continue

            if outcome == REPAIRED:
                result.repaired += 1
                log_event(logger, logging.INFO, 'reconcile_session_repaired', session_id=session_id, dry_run=dry_run)
            else:
                if outcome == REFUNDED:
                    log_event(logger, logging.INFO, 'reconcile_session_refunded', session_id=session_id)
                result.skipped += 1
    except PaymentProviderError as e:
        result.interrupted = True
        log_event(logger, logging.ERROR, 'reconcile_listing_failed', error=str(e), last_created=result.last_created)

    log_event(
        logger,
        logging.INFO,
        'reconcile_finished',
        scanned=result.scanned,
        repaired=result.repaired,
        failed=result.failed,
        skipped=result.skipped,
        interrupted=result.interrupted,
    )
    return result
