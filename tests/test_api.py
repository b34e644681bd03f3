"""End-to-end checks through the HTTP routes."""


def register(client, email="a@x.com"):
    r = client.post(
        "/api/vendor/register",
        json={"name": "A", "email": email, "password": "pw", "businessName": "Shop"},
    )
    return r


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_health_and_root(client):
    assert client.get("/health").json()["status"] == "OK"
    assert client.get("/").status_code == 200
    assert client.get("/test").json()["storage"] == "custom"


def test_register_then_duplicate(client):
    r = register(client)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["vendor"]["vendorPaymentUrl"]
    assert body["vendor"]["vendorQRCode"].startswith("data:image/png")
    assert "credentialHash" not in body["vendor"]
    assert body["token"]

    dup = register(client)
    assert dup.status_code == 409
    assert dup.json() == {"success": False, "error": "Email already registered", "code": "DUPLICATE_EMAIL"}


def test_register_with_bad_email_is_enveloped(client):
    r = client.post(
        "/api/vendor/register",
        json={"name": "A", "email": "not-an-email", "password": "pw", "businessName": "Shop"},
    )
    assert r.status_code == 422
    assert r.json()["success"] is False
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_login_profile_logout(client):
    register(client)
    bad = client.post("/api/vendor/login", json={"email": "a@x.com", "password": "nope"})
    assert bad.status_code == 401
    assert bad.json()["error"] == "Invalid credentials"

    token = client.post("/api/vendor/login", json={"email": "a@x.com", "password": "pw"}).json()["token"]
    profile = client.get("/api/vendor/profile", headers=bearer(token))
    assert profile.json()["vendor"]["email"] == "a@x.com"

    assert client.post("/api/vendor/logout", headers=bearer(token)).json()["success"] is True
    assert client.get("/api/vendor/profile", headers=bearer(token)).status_code == 401


def test_protected_routes_require_token(client):
    r = client.post("/api/payment/generate", json={"amount": 10})
    assert r.status_code == 401
    assert r.json()["code"] == "UNAUTHORIZED"


def test_generate_and_process_payment(client, processor):
    token = register(client).json()["token"]

    generated = client.post(
        "/api/payment/generate", json={"amount": 10.00, "currency": "usd"}, headers=bearer(token)
    ).json()["payment"]
    assert generated["status"] == "pending"
    assert generated["amount"] == 10.0

    fetched = client.get(f"/api/payment/{generated['id']}").json()["payment"]
    assert fetched["id"] == generated["id"]

    processor.decline = True
    declined = client.post(f"/api/payment/{generated['id']}/process", json={"paymentMethodId": "pm_card"})
    assert declined.status_code == 502
    assert declined.json()["code"] == "CHARGE_DECLINED"

    processor.decline = False
    done = client.post(f"/api/payment/{generated['id']}/process", json={"paymentMethodId": "pm_card"})
    assert done.json()["payment"]["status"] == "completed"

    again = client.post(f"/api/payment/{generated['id']}/process", json={"paymentMethodId": "pm_card"})
    assert again.status_code == 409

    txs = client.get("/api/transactions", headers=bearer(token)).json()["transactions"]
    assert len(txs) == 1
    assert txs[0]["platformFee"] == 0.10
    assert txs[0]["vendorAmount"] == 9.90

    stats = client.get("/api/dashboard/stats", headers=bearer(token)).json()["stats"]
    assert stats == {"count": 1, "grossTotal": 10.0, "vendorNetTotal": 9.9, "platformFeeTotal": 0.1}


def test_expired_payment_via_http(client, clock):
    payment = client.post("/api/payment/platform", json={"amount": 5}).json()["payment"]
    clock.advance(minutes=16)
    assert client.get(f"/api/payment/{payment['id']}").json()["payment"]["status"] == "expired"
    r = client.post(f"/api/payment/{payment['id']}/process", json={"paymentMethodId": "pm"})
    assert r.json()["code"] == "PAYMENT_EXPIRED"


def test_invalid_amount(client):
    vendor_id = register(client).json()["vendor"]["id"]
    r = client.post(f"/api/vendor/{vendor_id}/payment", json={"amount": 0, "paymentMethodId": "pm"})
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_AMOUNT"


def test_vendor_qr_payment_and_info(client):
    vendor_id = register(client).json()["vendor"]["id"]
    info = client.get(f"/api/vendor/{vendor_id}/info").json()["vendor"]
    assert info == {"id": vendor_id, "businessName": "Shop", "email": "a@x.com"}

    tx = client.post(
        f"/api/vendor/{vendor_id}/payment", json={"amount": 12.5, "paymentMethodId": "pm_card"}
    ).json()["transaction"]
    assert tx["type"] == "vendor-qr"
    assert tx["platformFee"] == 0.13

    assert client.get("/api/vendor/missing/info").status_code == 404


def test_wallet_payment_returns_otp_outcome(client):
    vendor_id = register(client).json()["vendor"]["id"]
    body = client.post(
        f"/api/vendor/{vendor_id}/wallet-payment",
        json={"amount": 8, "payerName": "Pat", "payerPhone": "5551234567"},
    ).json()
    assert body["transaction"]["channel"] == "wallet"
    assert body["otp"]["maskedPhone"] == "******4567"

    verified = client.post("/api/otp/verify", json={"phone": "5551234567", "code": body["otp"]["testCode"]})
    assert verified.json() == {"success": True, "verified": True}


def test_user_registration_and_transfer(client):
    user = client.post("/api/user/register", json={"name": "Sam", "phone": "5550001111"}).json()["user"]
    info = client.get(f"/api/user/{user['id']}/info").json()["user"]
    assert info["phoneMasked"] == "******1111"

    transfer = client.post(
        f"/api/user/{user['id']}/transfer",
        json={"amount": 15, "senderName": "Alex", "senderPhone": "5559876", "paymentOption": "google_pay"},
    ).json()["transfer"]
    assert transfer["status"] == "completed"
    assert transfer["otp"]["testCode"]

    all_txs = client.get("/api/transactions/all").json()["transactions"]
    assert all_txs[0]["platformFee"] is None


def test_customer_instruments_and_saved_charge(client):
    token = register(client).json()["token"]
    vendor_id = client.get("/api/vendor/profile", headers=bearer(token)).json()["vendor"]["id"]

    customer = client.post("/api/customer/resolve", json={"email": "pat@x.com", "name": "Pat"}).json()["customer"]
    cid = customer["id"]
    first = client.post(f"/api/customer/{cid}/instruments", json={"paymentMethodId": "pm_1", "setDefault": True})
    client.post(f"/api/customer/{cid}/instruments", json={"paymentMethodId": "pm_2", "setDefault": True})

    instruments = client.get(f"/api/customer/{cid}/instruments").json()["instruments"]
    assert [i["externalRef"] for i in instruments if i["isDefault"]] == ["pm_2"]

    charged = client.post(
        f"/api/vendor/{vendor_id}/charge-saved",
        json={"customerId": cid, "amount": 20},
        headers=bearer(token),
    ).json()["transaction"]
    assert charged["customerId"] == cid

    removed = client.delete(f"/api/customer/{cid}/instruments/{first.json()['instrument']['id']}")
    assert removed.json() == {"success": True}
    assert len(client.get(f"/api/customer/{cid}/instruments").json()["instruments"]) == 1


def test_otp_send_and_verify_errors(client):
    sent = client.post("/api/otp/send", json={"phone": "5551234"}).json()
    assert sent["success"] is True
    assert sent["delivered"] is False

    missing = client.post("/api/otp/verify", json={"phone": "000", "code": "1234"})
    assert missing.status_code == 404
    assert missing.json()["code"] == "OTP_NOT_REQUESTED"


def test_platform_revenue(client):
    vendor_id = register(client).json()["vendor"]["id"]
    client.post(f"/api/vendor/{vendor_id}/payment", json={"amount": 100, "paymentMethodId": "pm"})
    stats = client.get("/api/admin/revenue").json()["stats"]
    assert stats["platformFeeTotal"] == 1.0
    assert stats["vendorNetTotal"] == 99.0


def test_instrument_refresh_reconciles_with_processor(client, processor):
    cid = client.post("/api/customer/resolve", json={"phone": "555"}).json()["customer"]["id"]
    client.post(f"/api/customer/{cid}/instruments", json={"paymentMethodId": "pm_1"})
    client.post(f"/api/customer/{cid}/instruments", json={"paymentMethodId": "pm_2"})
    processor.attached = [(p, m) for p, m in processor.attached if m != "pm_1"]

    assert len(client.get(f"/api/customer/{cid}/instruments").json()["instruments"]) == 2
    refreshed = client.get(f"/api/customer/{cid}/instruments", params={"refresh": "true"}).json()["instruments"]
    assert [i["externalRef"] for i in refreshed] == ["pm_2"]


def test_otp_lockout_via_http(client, settings):
    code = client.post("/api/otp/send", json={"phone": "5551234"}).json()["testCode"]
    wrong = "0000" if code != "0000" else "1111"
    for _ in range(settings.otp_max_attempts):
        r = client.post("/api/otp/verify", json={"phone": "5551234", "code": wrong})
    assert r.status_code == 400
    assert r.json()["code"] == "OTP_ATTEMPTS_EXCEEDED"
