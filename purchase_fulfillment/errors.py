"""Error taxonomy for checkout, webhook fulfillment and reconciliation."""

from contextlib import contextmanager

from google.api_core.exceptions import AlreadyExists, GoogleAPICallError, RetryError


class FulfillmentError(Exception):
    """Base class for all fulfillment errors."""


class InvalidSignature(FulfillmentError):
    """Webhook payload could not be authenticated."""


class MalformedContract(FulfillmentError):
    """Fulfillment metadata is missing or corrupt."""


class BusinessRuleRejection(FulfillmentError):
    """Expected rejection surfaced to the caller, not logged as a failure."""

    code = 'rejected'


class ProductNotFound(BusinessRuleRejection):
    code = 'product_not_found'


class SelfPurchase(BusinessRuleRejection):
    code = 'self_purchase'


class CreatorNotPayable(BusinessRuleRejection):
    code = 'creator_not_payable'


class AlreadyOwned(BusinessRuleRejection):
    code = 'already_owned'


class AlreadyGranted(BusinessRuleRejection):
    code = 'already_granted'


class PaymentRefunded(BusinessRuleRejection):
    code = 'payment_refunded'


class TransientStoreFailure(FulfillmentError):
    """Network, timeout or contention failure on the entitlement store. Retryable."""


class HandlerTimeout(TransientStoreFailure):
    """The webhook handler ran past its deadline."""


class PaymentProviderError(FulfillmentError):
    """Stripe API call failed."""


@contextmanager
def translate_store_errors(operation):
    """Re-raise Firestore API failures as TransientStoreFailure.

    AlreadyExists is a precondition result, not a transient failure, and passes through.
    """
    try:
        yield
    except AlreadyExists:
        raise
    except (GoogleAPICallError, RetryError) as exc:
        raise TransientStoreFailure(f"{operation} failed: {exc}") from exc
