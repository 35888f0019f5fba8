import pytest

COUPONS_URL = "/api/coupons/"
APPLY_URL = "/api/coupons/apply/"

pytestmark = pytest.mark.django_db


def _post(client, url, payload):
    return client.post(url, data=payload, content_type="application/json")


def test_create_and_validate_coupon(client, services):
    r = _post(client, COUPONS_URL, {"code": "save10", "discount_type": "percentage", "discount_value": 10, "max_uses": 5})
    assert r.status_code == 201
    body = r.json()
    assert body["code"] == "SAVE10"
    assert body["current_uses"] == 0
    assert body["expires_at"] is None

    r = client.get("/api/coupons/save10/", {"cart_value": 250_000})
    assert r.status_code == 200
    assert r.json() == {"valid": True, "code": "SAVE10", "discount_minor": 25_000}


def test_create_duplicate_coupon(client, services):
    payload = {"code": "DUP", "discount_type": "fixed", "discount_value": 500}
    assert _post(client, COUPONS_URL, payload).status_code == 201
    r = _post(client, COUPONS_URL, payload)
    assert r.status_code == 409
    assert r.json()["detail"] == "COUPON_EXISTS"


def test_create_coupon_validation(client, services):
    r = _post(client, COUPONS_URL, {"code": "X", "discount_type": "bogus", "discount_value": 5})
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"

    r = _post(client, COUPONS_URL, {"code": "X", "discount_type": "percentage", "discount_value": 150})
    assert r.status_code == 400


def test_validate_errors(client, services):
    assert client.get("/api/coupons/NOPE/", {"cart_value": 100}).status_code == 404
    _post(client, COUPONS_URL, {"code": "MIN", "discount_type": "fixed", "discount_value": 500, "min_order_minor": 10_000})

    r = client.get("/api/coupons/MIN/", {"cart_value": 100})
    assert r.status_code == 400
    assert r.json()["detail"] == "COUPON_MINIMUM_NOT_MET"

    assert client.get("/api/coupons/MIN/").status_code == 400


def test_apply_coupon_to_order(client, services, stock, gateway, order_payload):
    stock({"SKU-1": 5})
    gateway.available = False
    number = _post(client, "/api/orders/", order_payload()).json()["order"]["number"]
    _post(client, COUPONS_URL, {"code": "FLAT", "discount_type": "fixed", "discount_value": 20_000, "max_uses": 1})

    r = _post(client, APPLY_URL, {"code": "flat", "order_number": number})
    assert r.status_code == 200
    assert r.json()["coupon_code"] == "FLAT"
    assert r.json()["pricing"]["discount"] == 20_000
    assert r.json()["pricing"]["total"] == 248_000

    r = _post(client, APPLY_URL, {"code": "flat", "order_number": number})
    assert r.status_code == 400
    assert r.json()["detail"] == "COUPON_USAGE_LIMIT"
