import pytest
from google.api_core.exceptions import DeadlineExceeded

from purchase_fulfillment.errors import AlreadyGranted, PaymentRefunded, TransientStoreFailure
from purchase_fulfillment.models import FulfillmentContract
from purchase_fulfillment.services import entitlement_service


def _contract(buyer_id="buyer-b", product_id="product-p"):
    return FulfillmentContract(
        buyer_id=buyer_id,
        creator_id="creator-c",
        product_id=product_id,
        amount=2000,
        currency="usd",
        platform_fee_amount=500,
        created_at=1700000000,
    )


def _index_paths(buyer_id="buyer-b", reference="cs_1", product_id="product-p"):
    return {
        "canonical": f"entitlements/{buyer_id}__{product_id}",
        "global": f"bundlePurchases/{reference}",
        "user": f"users/{buyer_id}/purchases/{reference}",
    }


def test_grant_writes_every_index(db, firestore_module):
    entitlement, created = entitlement_service.ensure_granted(
        db, _contract(), "cs_1", firestore_module=firestore_module, payment_intent_id="pi_1"
    )

    paths = _index_paths()
    assert created is True
    assert db.get(paths["canonical"])["status"] == "active"
    assert db.get(paths["canonical"])["paymentReference"] == "cs_1"
    assert db.get(paths["global"])["status"] == "completed"
    assert db.get(paths["global"])["amount"] == 20.0
    assert db.get(paths["global"])["purchaseAmount"] == 2000
    assert db.get(paths["user"])["bundleId"] == "product-p"
    assert entitlement.payment_intent_id == "pi_1"


def test_grant_is_idempotent_for_same_payment(db, firestore_module):
    first, _ = entitlement_service.ensure_granted(db, _contract(), "cs_1", firestore_module=firestore_module)
    snapshot_before = dict(db.docs)

    second, created = entitlement_service.ensure_granted(db, _contract(), "cs_1", firestore_module=firestore_module)

    assert created is False
    assert second == first
    assert db.docs == snapshot_before
    assert db.paths_under("entitlements") == ["entitlements/buyer-b__product-p"]


def test_grant_under_different_payment_raises_already_granted(db, firestore_module):
    entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module)

    with pytest.raises(AlreadyGranted):
        entitlement_service.grant(db, _contract(), "cs_2", firestore_module=firestore_module)

    assert db.get("bundlePurchases/cs_2") is None


def test_revoke_keeps_the_record_and_marks_every_index(db, firestore_module):
    entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module)

    revoked = entitlement_service.revoke(db, "buyer-b", "product-p", firestore_module=firestore_module)

    paths = _index_paths()
    assert revoked.status == "revoked"
    assert db.get(paths["canonical"])["status"] == "revoked"
    assert db.get(paths["canonical"])["revokedAt"] is not None
    assert db.get(paths["global"])["status"] == "revoked"
    assert db.get(paths["user"])["entitlementStatus"] == "revoked"
    assert entitlement_service.has_entitlement(db, "buyer-b", "product-p") is False


def test_revoking_twice_or_missing_is_a_noop(db, firestore_module):
    assert entitlement_service.revoke(db, "buyer-b", "product-p", firestore_module=firestore_module) is None
    assert db.docs == {}

    entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module)
    first = entitlement_service.revoke(db, "buyer-b", "product-p", firestore_module=firestore_module)
    snapshot_after_first = dict(db.docs)
    second = entitlement_service.revoke(db, "buyer-b", "product-p", firestore_module=firestore_module)

    assert second == first
    assert db.docs == snapshot_after_first


def test_refund_of_another_payment_does_not_revoke(db, firestore_module):
    entitlement_service.grant(db, _contract(), "cs_2", firestore_module=firestore_module, payment_intent_id="pi_2")

    entitlement_service.revoke(db, "buyer-b", "product-p", firestore_module=firestore_module, payment_intent_id="pi_1")

    assert entitlement_service.has_entitlement(db, "buyer-b", "product-p") is True


def test_regrant_after_revoke_with_new_payment(db, firestore_module):
    entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module)
    entitlement_service.revoke(db, "buyer-b", "product-p", firestore_module=firestore_module)

    entitlement, created = entitlement_service.ensure_granted(db, _contract(), "cs_2", firestore_module=firestore_module)

    assert created is True
    assert entitlement.payment_reference == "cs_2"
    assert db.get("entitlements/buyer-b__product-p")["status"] == "active"
    assert db.get("bundlePurchases/cs_1")["status"] == "revoked"
    assert db.get("bundlePurchases/cs_2")["status"] == "completed"


def test_failure_while_staging_fanout_writes_nothing(db, firestore_module):
    db.fail("stage", ("users",))

    with pytest.raises(TransientStoreFailure):
        entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module)

    assert db.docs == {}


def test_failure_at_commit_writes_nothing(db, firestore_module):
    db.fail("commit", exc=DeadlineExceeded("commit timed out"), times=1)

    with pytest.raises(TransientStoreFailure):
        entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module)

    assert db.docs == {}
    # The next attempt goes through cleanly.
    assert entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module).is_active


def test_list_entitlements_newest_first_and_hides_revoked(db, firestore_module):
    entitlement_service.grant(db, _contract(product_id="p-old"), "cs_old", firestore_module=firestore_module)
    entitlement_service.grant(db, _contract(product_id="p-new"), "cs_new", firestore_module=firestore_module)
    entitlement_service.grant(db, _contract(product_id="p-gone"), "cs_gone", firestore_module=firestore_module)
    entitlement_service.grant(db, _contract(buyer_id="someone-else"), "cs_other", firestore_module=firestore_module)
    entitlement_service.revoke(db, "buyer-b", "p-gone", firestore_module=firestore_module)
    db.docs[("entitlements", "buyer-b__p-old")]["grantedAt"] = 100.0
    db.docs[("entitlements", "buyer-b__p-new")]["grantedAt"] = 200.0

    visible = entitlement_service.list_entitlements(db, "buyer-b")
    everything = entitlement_service.list_entitlements(db, "buyer-b", include_revoked=True)

    assert [e.product_id for e in visible] == ["p-new", "p-old"]
    assert {e.product_id for e in everything} == {"p-new", "p-old", "p-gone"}


def test_has_entitlement_with_blank_ids_is_false(db):
    assert entitlement_service.has_entitlement(db, "", "product-p") is False


def test_refund_with_nothing_to_revoke_blocks_that_payment(db, firestore_module):
    entitlement_service.revoke(db, "buyer-b", "product-p", firestore_module=firestore_module, payment_intent_id="pi_1")

    with pytest.raises(PaymentRefunded):
        entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module, payment_intent_id="pi_1")

    assert db.get("entitlements/buyer-b__product-p") is None
    assert entitlement_service.grant(
        db, _contract(), "cs_2", firestore_module=firestore_module, payment_intent_id="pi_2"
    ).is_active


def test_first_grant_counts_the_sale_once(db, firestore_module):
    db.collection("bundles").document("product-p").set({"title": "Bundle", "creatorId": "creator-c"})

    entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module)
    entitlement_service.grant(db, _contract(), "cs_1", firestore_module=firestore_module)

    assert db.get("bundles/product-p")["totalSales"] == 1
    assert db.get("users/creator-c")["totalRevenueCents"] == 1500
