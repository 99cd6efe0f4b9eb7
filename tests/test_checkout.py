import base64

import pytest

from cart import CartEngine
from cart_store import MemoryCartStore
from checkout import (
    CheckoutValidationError,
    OrderWriteError,
    Session,
    UploadError,
    UploadTooLargeError,
    store_payment_proof,
    submit_order,
)
from conftest import make_product
from schemas import CheckoutRequest, Promocode

SESSION = Session(user_id="u1", email="asha@thulodeal.com", name="Asha")
ADDRESS = {"full_name": "Asha Rai", "address": "Thamel 12", "city": "Kathmandu", "zip_code": "44600"}


def request(method="COD", **details):
    return CheckoutRequest(shipping_address=ADDRESS, payment_method=method, payment_details=details)


@pytest.fixture
def engine():
    engine = CartEngine(MemoryCartStore(), "cart:u1")
    for pid, price in [("a", 50), ("b", 80), ("c", 120)]:
        engine.add_to_cart(make_product(pid=pid, price=price), "M")
    return engine


class Recorder:
    def __init__(self, fail=False):
        self.fail = fail
        self.orders = []

    def __call__(self, order):
        if self.fail:
            raise ConnectionError("network down")
        self.orders.append(order)
        return "order-1"


def test_cod_order_is_written_and_cart_cleared(engine):
    write = Recorder()
    oid = submit_order(engine, SESSION, request(), write)
    assert oid == "order-1"
    order = write.orders[0]
    assert order.total_price == 200
    assert order.discount_amount == 50
    assert order.status == "Pending"
    assert order.payment_status == "Confirmed"
    assert order.user_id == "u1"
    assert [i.id for i in order.items] == ["a", "b", "c"]
    assert engine.items == []


def test_wallet_payment_starts_submitted(engine):
    write = Recorder()
    submit_order(
        engine,
        SESSION,
        request("eSewa", sender_id="9800000000", transaction_id="TX1", screenshot_url="/api/uploads/abc"),
        write,
    )
    order = write.orders[0]
    assert order.payment_status == "Submitted"
    assert order.payment_details.screenshot_url == "/api/uploads/abc"


def test_empty_cart_is_rejected():
    engine = CartEngine(MemoryCartStore(), "cart:u1")
    write = Recorder()
    with pytest.raises(CheckoutValidationError):
        submit_order(engine, SESSION, request(), write)
    assert write.orders == []


@pytest.mark.parametrize(
    "details",
    [
        {},
        {"sender_id": "98000"},
        {"sender_id": "98000", "transaction_id": "TX1"},
    ],
)
def test_missing_payment_fields_block_submission(engine, details):
    write = Recorder()
    with pytest.raises(CheckoutValidationError):
        submit_order(engine, SESSION, request("Khalti", **details), write)
    assert write.orders == []
    assert len(engine.items) == 3


def test_failed_write_leaves_cart_untouched(engine):
    before = [(i.id, i.quantity) for i in engine.items]
    with pytest.raises(OrderWriteError):
        submit_order(engine, SESSION, request(), Recorder(fail=True))
    assert [(i.id, i.quantity) for i in engine.items] == before
    # retry succeeds
    assert submit_order(engine, SESSION, request(), Recorder()) == "order-1"
    assert engine.items == []


def test_promo_applies_after_line_discount(engine):
    write = Recorder()
    promo = Promocode(code="DASHAIN10", discount=10)
    submit_order(engine, SESSION, request(), write, promo)
    order = write.orders[0]
    assert order.promo_code == "DASHAIN10"
    assert order.discount_amount == 50 + 20
    assert order.total_price == 180


def test_payload_is_a_copy(engine):
    write = Recorder()
    submit_order(engine, SESSION, request(), write)
    engine.add_to_cart(make_product(pid="z", price=5), "M")
    assert [i.id for i in write.orders[0].items] == ["a", "b", "c"]


def test_proof_upload_returns_reference():
    stored = []

    def write(doc):
        stored.append(doc)
        return "up1"

    url = store_payment_proof(b"\x89PNG...", "proof.png", "image/png", "u1", write)
    assert url == "/api/uploads/up1"
    assert base64.b64decode(stored[0].data_b64) == b"\x89PNG..."
    assert stored[0].owner_id == "u1"


def test_oversized_proof_is_rejected_before_write():
    calls = []
    with pytest.raises(UploadTooLargeError):
        store_payment_proof(b"x" * 11, "p.jpg", "image/jpeg", "u1", calls.append, max_bytes=10)
    assert calls == []


def test_empty_proof_is_a_validation_error():
    with pytest.raises(CheckoutValidationError):
        store_payment_proof(b"", "p.jpg", "image/jpeg", "u1", lambda doc: "x")


def test_upload_transport_error_is_wrapped():
    def broken(doc):
        raise TimeoutError("slow")

    with pytest.raises(UploadError):
        store_payment_proof(b"data", "p.jpg", "image/jpeg", "u1", broken)


@pytest.mark.parametrize("content_type", ["text/html", "image/svg+xml", "application/javascript", None])
def test_proof_must_be_a_raster_image(content_type):
    calls = []
    with pytest.raises(CheckoutValidationError):
        store_payment_proof(b"<script>alert(1)</script>", "x.html", content_type, "u1", calls.append)
    assert calls == []


def test_proof_content_type_is_normalized():
    stored = []
    store_payment_proof(b"img", "p.jpg", "Image/JPEG; charset=binary", "u1", lambda doc: stored.append(doc) or "up1")
    assert stored[0].content_type == "image/jpeg"
