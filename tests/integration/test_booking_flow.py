import json

from evently.domain.auth import Role


def _create_booking(client, headers, seats=2):
    response = client.post("/bookings", json={"event_id": "event1", "seats": seats}, headers=headers)
    assert response.status_code == 200
    assert response.json()["status"] == "PENDING"
    return response.json()["booking_id"]


def _initiate_payment(client, headers, booking_id, amount="500"):
    response = client.post(
        "/payments",
        json={
            "booking_id": booking_id,
            "event_id": "event1",
            "amount": amount,
            "currency": "INR",
            "method": "UPI",
        },
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "PENDING"
    return response.json()


def _post_webhook(client, webhook_signer, event, payload):
    body = json.dumps({"event": event, "payload": payload})
    return client.post(
        "/payments/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": webhook_signer(body)},
    )


def _titles(client, headers):
    response = client.get("/notifications", headers=headers)
    assert response.status_code == 200
    return [n["title"] for n in response.json()]


def test_booking_confirmed_after_verified_payment(client, bus, auth_headers, signer):
    headers = auth_headers("user1")

    booking_id = _create_booking(client, headers)
    bus.drain()
    payment = _initiate_payment(client, headers, booking_id)
    order_id = payment["order_id"]
    assert order_id.startswith("order_")
    assert payment["key_id"] == "rzp_test_key"

    verify = client.post(
        "/payments/verify",
        json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": "pay_P1",
            "razorpay_signature": signer(order_id, "pay_P1"),
        },
        headers=headers,
    )
    assert verify.status_code == 200
    assert verify.json()["status"] == "SUCCESS"

    bus.drain()

    booking = client.get(f"/bookings/{booking_id}", headers=headers).json()
    assert booking["status"] == "CONFIRMED"
    assert booking["payment_ref"] == "pay_P1"
    assert _titles(client, headers).count("Booking confirmed") == 1
    assert bus.dead_letters == []


def test_webhook_failure_fails_booking(client, bus, auth_headers, webhook_signer):
    headers = auth_headers("user1")

    booking_id = _create_booking(client, headers, seats=1)
    bus.drain()
    order_id = _initiate_payment(client, headers, booking_id)["order_id"]

    webhook = _post_webhook(
        client,
        webhook_signer,
        "payment.failed",
        {"order_id": order_id, "description": "Card declined"},
    )
    assert webhook.status_code == 200
    assert webhook.json()["payment_status"] == "FAILED"

    bus.drain()

    assert client.get(f"/bookings/{booking_id}", headers=headers).json()["status"] == "FAILED"
    payment = client.get(f"/payments/booking/{booking_id}", headers=headers).json()
    assert payment["status"] == "FAILED"
    assert payment["failure_reason"] == "Card declined"
    assert "Event booking failed." in _titles(client, headers)


def test_repeated_verify_is_idempotent(client, bus, auth_headers, signer):
    headers = auth_headers("user1")

    booking_id = _create_booking(client, headers)
    bus.drain()
    order_id = _initiate_payment(client, headers, booking_id)["order_id"]
    body = {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": "pay_P1",
        "razorpay_signature": signer(order_id, "pay_P1"),
    }

    first = client.post("/payments/verify", json=body, headers=headers)
    bus.drain()
    second = client.post("/payments/verify", json=body, headers=headers)
    bus.drain()

    assert first.status_code == second.status_code == 200
    for field in ("payment_id", "status", "gateway_payment_id", "order_id"):
        assert first.json()[field] == second.json()[field]
    assert second.json()["status"] == "SUCCESS"
    success_events = [e for _, _, e in bus.published if e.event_type.value == "payment.success"]
    changed_events = [e for _, _, e in bus.published if e.event_type.value == "booking.changed"]
    assert len(success_events) == 1
    assert len(changed_events) == 1
    assert _titles(client, headers).count("Booking confirmed") == 1


def test_webhook_success_with_signature_header(client, bus, auth_headers, signer, webhook_signer):
    headers = auth_headers("user1")
    booking_id = _create_booking(client, headers)
    bus.drain()
    order_id = _initiate_payment(client, headers, booking_id)["order_id"]

    response = _post_webhook(
        client,
        webhook_signer,
        "payment.captured",
        {"order_id": order_id, "id": "pay_W1", "signature": signer(order_id, "pay_W1")},
    )
    bus.drain()

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert client.get(f"/bookings/{booking_id}", headers=headers).json()["status"] == "CONFIRMED"


def test_unsigned_failure_webhook_changes_nothing(client, bus, auth_headers):
    headers = auth_headers("user1")
    booking_id = _create_booking(client, headers)
    bus.drain()
    order_id = _initiate_payment(client, headers, booking_id)["order_id"]

    unsigned = client.post(
        "/payments/webhook",
        json={"event": "payment.failed", "payload": {"order_id": order_id}},
    )
    forged = client.post(
        "/payments/webhook",
        json={"event": "payment.failed", "payload": {"order_id": order_id}},
        headers={"X-Razorpay-Signature": "0" * 64},
    )
    bus.drain()

    assert unsigned.status_code == 400
    assert forged.status_code == 400
    assert client.get(f"/payments/booking/{booking_id}", headers=headers).json()["status"] == "PENDING"
    assert client.get(f"/bookings/{booking_id}", headers=headers).json()["status"] == "PENDING"


def test_webhook_refused_without_configured_secret(client, bus, auth_headers, gateway, monkeypatch):
    headers = auth_headers("user1")
    booking_id = _create_booking(client, headers)
    bus.drain()
    order_id = _initiate_payment(client, headers, booking_id)["order_id"]
    monkeypatch.setattr(gateway, "webhook_secret", None)

    response = client.post(
        "/payments/webhook",
        json={"event": "payment.failed", "payload": {"order_id": order_id}},
        headers={"X-Razorpay-Signature": "anything"},
    )

    assert response.status_code == 503
    assert client.get(f"/payments/booking/{booking_id}", headers=headers).json()["status"] == "PENDING"


def test_webhook_with_undecodable_body_is_rejected(client):
    response = client.post(
        "/payments/webhook",
        content=b"\xff\xfe{not utf-8",
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": "sig"},
    )

    assert response.status_code == 400


def test_forged_verify_is_rejected(client, bus, auth_headers):
    headers = auth_headers("user1")
    booking_id = _create_booking(client, headers)
    bus.drain()
    order_id = _initiate_payment(client, headers, booking_id)["order_id"]

    response = client.post(
        "/payments/verify",
        json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": "pay_P1",
            "razorpay_signature": "forged",
        },
        headers=headers,
    )

    assert response.status_code == 400
    bus.drain()
    assert client.get(f"/bookings/{booking_id}", headers=headers).json()["status"] == "PENDING"


def test_duplicate_payment_conflicts(client, bus, auth_headers):
    headers = auth_headers("user1")
    booking_id = _create_booking(client, headers)
    bus.drain()
    _initiate_payment(client, headers, booking_id)

    response = client.post(
        "/payments",
        json={"booking_id": booking_id, "event_id": "event1", "amount": "500", "method": "UPI"},
        headers=headers,
    )

    assert response.status_code == 409


def test_cancel_then_cancel_again(client, auth_headers):
    headers = auth_headers("user1")
    booking_id = _create_booking(client, headers)

    first = client.post(f"/bookings/{booking_id}/cancel", headers=headers)
    second = client.post(f"/bookings/{booking_id}/cancel", headers=headers)

    assert first.json()["status"] == second.json()["status"] == "CANCELLED"


def test_missing_token_is_unauthorized(client):
    response = client.post("/bookings", json={"event_id": "event1", "seats": 1})

    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}


def test_bad_token_is_unauthorized(client):
    response = client.get("/bookings", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}


def test_forwarded_identity_headers_are_not_trusted(client):
    response = client.get("/bookings", headers={"X-User-Id": "admin", "X-User-Role": "ADMIN"})

    assert response.status_code == 401


def test_missing_capability_is_forbidden(client, auth_headers):
    headers = auth_headers("user1")
    booking_id = _create_booking(client, headers)

    response = client.post(f"/bookings/{booking_id}/confirm", json={"payment_ref": "pay_X"}, headers=headers)

    assert response.status_code == 403
    assert response.json() == {"detail": "Forbidden"}


def test_other_users_booking_is_forbidden(client, auth_headers):
    booking_id = _create_booking(client, auth_headers("user1"))

    response = client.get(f"/bookings/{booking_id}", headers=auth_headers("user2"))

    assert response.status_code == 403


def test_organizer_lists_bookings_for_event(client, auth_headers):
    first = _create_booking(client, auth_headers("user1"))
    second = _create_booking(client, auth_headers("user2"), seats=1)

    organizer = client.get("/bookings/event/event1", headers=auth_headers("org1", Role.ORGANIZER))
    customer = client.get("/bookings/event/event1", headers=auth_headers("user1"))

    assert organizer.status_code == 200
    assert {b["booking_id"] for b in organizer.json()} == {first, second}
    assert customer.status_code == 403


def test_notification_is_visible_to_its_owner_only(client, bus, auth_headers):
    headers = auth_headers("user1")
    _create_booking(client, headers)
    bus.drain()
    notification_id = client.get("/notifications", headers=headers).json()[0]["id"]

    own = client.get(f"/notifications/{notification_id}", headers=headers)
    other = client.get(f"/notifications/{notification_id}", headers=auth_headers("user2"))
    missing = client.get("/notifications/does-not-exist", headers=headers)

    assert own.status_code == 200
    assert own.json()["title"] == "Booking received"
    assert other.status_code == 403
    assert missing.status_code == 404


def test_admin_can_view_outbox(client, auth_headers):
    _create_booking(client, auth_headers("user1"))

    response = client.get(
        "/outbox/events",
        params={"source": "booking-service", "status_filter": "PUBLISHED"},
        headers=auth_headers("ops", Role.ADMIN),
    )

    assert response.status_code == 200
    assert [e["event_type"] for e in response.json()] == ["booking.created"]


def test_health_is_public(client):
    assert client.get("/health").status_code == 200
