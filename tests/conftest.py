import copy
import json
import time
from decimal import Decimal

import pytest
from google.api_core.exceptions import AlreadyExists, NotFound, ServiceUnavailable

from purchase_fulfillment import create_app
from purchase_fulfillment.config import AppConfig
from purchase_fulfillment.errors import InvalidSignature, PaymentProviderError
from purchase_fulfillment.models import PayoutEligibility


class _Snapshot:
    def __init__(self, ref, data):
        self.reference = ref
        self.id = ref.id
        self._data = copy.deepcopy(data)

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data)


class _DocumentRef:
    def __init__(self, store, path):
        self._store = store
        self.path = path
        self.id = path[-1]

    def collection(self, name):
        return _Collection(self._store, self.path + (name,))

    def get(self, transaction=None):
        if transaction is not None:
            transaction.record_read(self.path)
        self._store.check_failure('read', self.path)
        return _Snapshot(self, self._store.docs.get(self.path))

    def set(self, data, merge=False):
        self._store.apply([('set', self.path, data, merge)])

    def create(self, data):
        self._store.apply([('create', self.path, data, False)])

    def update(self, data):
        self._store.apply([('update', self.path, data, True)])


class _Query:
    def __init__(self, store, collection_path, filters=(), limit_count=None):
        self._store = store
        self._collection_path = collection_path
        self._filters = filters
        self._limit = limit_count

    # Positional only: apply_where falls back here after the filter= TypeError.
    def where(self, field_path, op_string, value):
        return _Query(self._store, self._collection_path, self._filters + ((field_path, op_string, value),), self._limit)

    def limit(self, count):
        return _Query(self._store, self._collection_path, self._filters, count)

    def stream(self):
        self._store.check_failure('read', self._collection_path)
        results = []
        for path, data in sorted(self._store.docs.items()):
            if path[:-1] != self._collection_path:
                continue
            if all(op == '==' and data.get(field) == value for field, op, value in self._filters):
                results.append(_Snapshot(_DocumentRef(self._store, path), data))
        if self._limit is not None:
            results = results[:self._limit]
        return iter(results)


class _Collection(_Query):
    def document(self, doc_id):
        return _DocumentRef(self._store, self._collection_path + (doc_id,))


class FakeIncrement:
    def __init__(self, value):
        self.value = value


def _resolve_increments(existing, data):
    resolved = {}
    for key, value in data.items():
        if isinstance(value, FakeIncrement):
            resolved[key] = (existing or {}).get(key, 0) + value.value
        else:
            resolved[key] = copy.deepcopy(value)
    return resolved


class FakeTransaction:
    def __init__(self, store):
        self._store = store
        self._writes = []

    def record_read(self, path):
        if self._writes:
            raise AssertionError(f"Firestore transactions must read before writing (read {path})")

    def set(self, ref, data, merge=False):
        self._store.check_failure('stage', ref.path)
        self._writes.append(('set', ref.path, data, merge))

    def create(self, ref, data):
        self._store.check_failure('stage', ref.path)
        self._writes.append(('create', ref.path, data, False))

    def update(self, ref, data):
        self._store.check_failure('stage', ref.path)
        self._writes.append(('update', ref.path, data, True))

    def commit(self):
        self._store.check_failure('commit', ())
        self._store.apply(self._writes)
        self._writes = []

    def rollback(self):
        self._writes = []


class FakeFirestore:
    """In-memory Firestore double with all-or-nothing transaction commits."""

    def __init__(self):
        self.docs = {}
        self.failures = []

    def collection(self, name):
        return _Collection(self, (name,))

    def transaction(self):
        return FakeTransaction(self)

    def fail(self, stage, path_prefix=(), exc=None, times=None):
        """Make the next ``stage`` ('read', 'stage', 'commit') touching ``path_prefix`` raise."""
        self.failures.append({
            'stage': stage,
            'prefix': tuple(path_prefix),
            'exc': exc or ServiceUnavailable('firestore unavailable'),
            'times': times,
        })

    def check_failure(self, stage, path):
        for failure in list(self.failures):
            if failure['stage'] == stage and tuple(path[:len(failure['prefix'])]) == failure['prefix']:
                if failure['times'] is not None:
                    failure['times'] -= 1
                    if failure['times'] <= 0:
                        self.failures.remove(failure)
                raise failure['exc']

    def apply(self, writes):
        staged = dict(self.docs)
        for op, path, data, merge in writes:
            if op == 'create':
                if path in staged:
                    raise AlreadyExists(f"Document already exists: {'/'.join(path)}")
                staged[path] = _resolve_increments(None, data)
            elif op == 'update':
                if path not in staged:
                    raise NotFound(f"No document to update: {'/'.join(path)}")
                merged = dict(staged[path])
                merged.update(_resolve_increments(staged[path], data))
                staged[path] = merged
            elif merge and path in staged:
                merged = dict(staged[path])
                merged.update(_resolve_increments(staged[path], data))
                staged[path] = merged
            else:
                staged[path] = _resolve_increments(None, data)
        self.docs = staged

    def get(self, path):
        return copy.deepcopy(self.docs.get(tuple(path.split('/'))))

    def paths_under(self, collection_path):
        prefix = tuple(collection_path.split('/'))
        return sorted('/'.join(path) for path in self.docs if path[:-1] == prefix)


class FakeFirestoreModule:
    Increment = FakeIncrement

    class Query:
        DESCENDING = 'DESCENDING'
        ASCENDING = 'ASCENDING'

    @staticmethod
    def transactional(fn):
        def wrapper(transaction, *args, **kwargs):
            try:
                result = fn(transaction, *args, **kwargs)
                transaction.commit()
            except Exception:
                transaction.rollback()
                raise
            return result
        return wrapper


class FakeAuth:
    """Bearer token "<uid>" verifies as that uid; "bad" fails verification."""

    @staticmethod
    def verify_id_token(token):
        if token == 'bad':
            raise ValueError('invalid token')
        return {'uid': token, 'email': f"{token}@example.com"}


class FakeStripeProvider:
    def __init__(self):
        self.webhook_secret = 'whsec_test'
        self.sessions = {}
        self.payment_intents = {}
        self.eligibility = {}
        self.created = []
        self.list_error_after = None
        self.eligibility_error = None

    @property
    def webhook_configured(self):
        return bool(self.webhook_secret)

    def create_checkout_session(self, contract, *, product_title, destination_account, success_url, cancel_url, customer_email=''):
        index = len(self.created) + 1
        session_id = f"cs_test_{index}"
        payment_intent_id = f"pi_test_{index}"
        metadata = contract.to_metadata()
        self.sessions[session_id] = {
            'id': session_id,
            'object': 'checkout.session',
            'url': f"https://checkout.stripe.test/{session_id}",
            'metadata': metadata,
            'client_reference_id': contract.buyer_id,
            'payment_status': 'unpaid',
            'status': 'open',
            'amount_total': contract.amount,
            'currency': contract.currency,
            'payment_intent': payment_intent_id,
            'created': int(time.time()),
        }
        self.payment_intents[payment_intent_id] = {'id': payment_intent_id, 'metadata': dict(metadata)}
        self.created.append({
            'contract': contract,
            'product_title': product_title,
            'destination_account': destination_account,
            'success_url': success_url,
            'cancel_url': cancel_url,
            'customer_email': customer_email,
        })
        return self.sessions[session_id]['url'], session_id

    def mark_paid(self, session_id):
        session = self.sessions[session_id]
        session['payment_status'] = 'paid'
        session['status'] = 'complete'
        return session

    def verify_webhook_signature(self, payload, signature_header):
        if signature_header != 'valid-signature':
            raise InvalidSignature('No signatures found matching the expected signature for payload')
        if isinstance(payload, bytes):
            payload = payload.decode('utf-8')
        try:
            return json.loads(payload)
        except ValueError:
            raise InvalidSignature('Invalid payload')

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise PaymentProviderError(f"No such checkout.session: {session_id}")
        return copy.deepcopy(self.sessions[session_id])

    def retrieve_payment_intent(self, payment_intent_id):
        if payment_intent_id not in self.payment_intents:
            raise PaymentProviderError(f"No such payment_intent: {payment_intent_id}")
        return copy.deepcopy(self.payment_intents[payment_intent_id])

    def list_completed_sessions(self, since, page_size=100):
        yielded = 0
        ordered = sorted(self.sessions.values(), key=lambda s: s['created'], reverse=True)
        for session in ordered:
            if session['status'] != 'complete' or session['created'] < since:
                continue
            if self.list_error_after is not None and yielded >= self.list_error_after:
                raise PaymentProviderError('Stripe listing failed')
            yielded += 1
            yield copy.deepcopy(session)

    def get_payout_eligibility(self, account_id):
        if self.eligibility_error is not None:
            raise self.eligibility_error
        return self.eligibility.get(account_id, PayoutEligibility())


def checkout_completed_event(event_id, session, event_type='checkout.session.completed'):
    return {
        'id': event_id,
        'object': 'event',
        'type': event_type,
        'data': {'object': copy.deepcopy(session)},
    }


def charge_refunded_event(event_id, payment_intent_id, *, refunded=True, metadata=None, amount=2000):
    return {
        'id': event_id,
        'object': 'event',
        'type': 'charge.refunded',
        'data': {
            'object': {
                'id': f"ch_{payment_intent_id}",
                'object': 'charge',
                'payment_intent': payment_intent_id,
                'refunded': refunded,
                'amount': amount,
                'amount_refunded': amount if refunded else amount // 2,
                'currency': 'usd',
                'metadata': metadata or {},
            }
        },
    }


def seed_marketplace(db, provider, *, payable=True, price=20.00):
    db.collection('users').document('creator-c').set({'username': 'creator', 'stripeAccountId': 'acct_creator_c'})
    db.collection('productBoxes').document('product-p').set({
        'title': 'Clip pack',
        'creatorId': 'creator-c',
        'price': price,
        'currency': 'usd',
        'active': True,
    })
    provider.eligibility['acct_creator_c'] = PayoutEligibility(
        charges_enabled=payable,
        payouts_enabled=payable,
        details_submitted=payable,
    )


@pytest.fixture()
def db():
    return FakeFirestore()


@pytest.fixture()
def firestore_module():
    return FakeFirestoreModule


@pytest.fixture()
def provider():
    return FakeStripeProvider()


@pytest.fixture()
def app_config():
    return AppConfig(
        runtime_env='test',
        stripe_publishable_key='pk_test_contract',
        stripe_webhook_secret='whsec_test',
        site_url='https://shop.example.com',
        platform_fee_rate=Decimal('0.25'),
        admin_uids=frozenset({'admin-u'}),
    )


@pytest.fixture()
def app(app_config, db, firestore_module, provider):
    flask_app = create_app(
        app_config,
        db=db,
        firestore_module=firestore_module,
        auth_module=FakeAuth,
        provider=provider,
    )
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture()
def client(app):
    with app.test_client() as test_client:
        yield test_client
