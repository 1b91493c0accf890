import json

import pytest
from fastapi.testclient import TestClient

from apps.api import config as app_config
from apps.api.main import app
from apps.api.services import accounts, payments

SECRET = "test_secret_key"
ORDER = "order_9A33XWu170gUtm"
PAYMENT = "pay_29QQoUBi66xm2f"
# openssl dgst -sha256 -hmac test_secret_key <<< "order_9A33XWu170gUtm|pay_29QQoUBi66xm2f"
SIGNATURE = "c96ab4589bde779a8ecb195d2b803ec3f9eecf848e548fb04a40461c18d41717"


def _mutations(sig):
    for idx in (0, len(sig) // 2, len(sig) - 1):
        repl = "0" if sig[idx] != "0" else "1"
        yield sig[:idx] + repl + sig[idx + 1:]


def test_compute_signature_matches_known_vector():
    assert payments.compute_signature(ORDER, PAYMENT, SECRET) == SIGNATURE


def test_verify_signature_accepts_exact_digest():
    assert payments.verify_signature(ORDER, PAYMENT, SIGNATURE, SECRET) is True


@pytest.mark.parametrize("mutated", list(_mutations(SIGNATURE)))
def test_verify_signature_rejects_single_character_change(mutated):
    assert payments.verify_signature(ORDER, PAYMENT, mutated, SECRET) is False


def test_verify_signature_rejects_swapped_ids_and_empty():
    assert payments.verify_signature(PAYMENT, ORDER, SIGNATURE, SECRET) is False
    assert payments.verify_signature(ORDER, PAYMENT, "", SECRET) is False
    assert payments.verify_signature(ORDER, PAYMENT, SIGNATURE.upper(), SECRET) is False


def _body(signature=SIGNATURE, user="user_1"):
    return {
        "razorpay_order_id": ORDER,
        "razorpay_payment_id": PAYMENT,
        "razorpay_signature": signature,
        "userId": user,
    }


def test_payment_verification_grants_pro(monkeypatch):
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", SECRET)
    app_config.reset_cache()
    client = TestClient(app)

    resp = client.post("/api/payment-verification", json=_body())
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert accounts.get_account("user_1")["hasPro"] is True

    # 二重通知でも状態は同じ
    resp = client.post("/api/payment-verification", json=_body())
    assert resp.status_code == 200
    account = accounts.get_account("user_1")
    assert account["hasPro"] is True
    assert account["credits"] == app_config.FREE_CREDITS


def test_payment_verification_rejects_bad_signature(monkeypatch):
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", SECRET)
    app_config.reset_cache()
    client = TestClient(app)

    bad = next(_mutations(SIGNATURE))
    resp = client.post("/api/payment-verification", json=_body(signature=bad))
    assert resp.status_code == 400
    assert resp.json() == {"status": "error", "message": "Invalid signature"}
    assert accounts.get_account("user_1")["hasPro"] is False


def test_payment_verification_reads_secret_from_credentials_file(tmp_path, monkeypatch):
    path = tmp_path / "credentials.json"
    path.write_text(json.dumps({"payment": {"key_secret": SECRET}}), encoding="utf-8")
    monkeypatch.setenv("FORMULAFLOW_CREDENTIALS_FILE", str(path))
    app_config.reset_cache()

    resp = TestClient(app).post("/api/payment-verification", json=_body(user="user_2"))
    assert resp.status_code == 200
    assert accounts.get_account("user_2")["hasPro"] is True


def test_payment_verification_without_secret_is_server_error():
    resp = TestClient(app).post("/api/payment-verification", json=_body())
    assert resp.status_code == 500
    assert resp.json()["status"] == "error"


def test_payment_verification_invalid_json_is_server_error(monkeypatch):
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", SECRET)
    app_config.reset_cache()
    resp = TestClient(app).post(
        "/api/payment-verification",
        content=b"not json",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 500


@pytest.mark.parametrize("forged", ["é", "c96ab4589bde779a8ecb195d2b803ec3f9eecf848e548fb04a40461c18d4171é", "\ud800"])
def test_verify_signature_rejects_non_ascii(forged):
    assert payments.verify_signature(ORDER, PAYMENT, forged, SECRET) is False


def test_payment_verification_non_ascii_signature_is_bad_request(monkeypatch):
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", SECRET)
    app_config.reset_cache()

    resp = TestClient(app).post("/api/payment-verification", json=_body(signature="é"))
    assert resp.status_code == 400
    assert resp.json() == {"status": "error", "message": "Invalid signature"}
    assert accounts.get_account("user_1")["hasPro"] is False
