import importlib
import json
import sys
import time
from pathlib import Path
from urllib.parse import parse_qs, quote

import httpx
import pytest
from fastapi.testclient import TestClient

WEBHOOK_SECRET = "whsec_test"
BILLING_ENV = {
    "STRIPE_SECRET_KEY": "sk_test",
    "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
    "STRIPE_BASIC_PRICE_ID": "price_basic_m",
    "STRIPE_PRO_PRICE_ID": "price_pro_m",
    "STRIPE_ENTERPRISE_PRICE_ID": "price_ent_m",
    "STRIPE_PRO_ANNUAL_PRICE_ID": "price_pro_y",
}


def _prepare_client(tmp_path, monkeypatch, *, max_size=str(1024 * 1024), billing=True):
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        sys.path.insert(0, project_root_str)

    db_path = tmp_path / "test.db"
    monkeypatch.setenv("STORAGE_DIR", str(tmp_path / "blobs"))
    monkeypatch.setenv("DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("ENABLE_CLEANER", "false")
    monkeypatch.setenv("MAX_FILE_SIZE_BYTES", max_size)
    monkeypatch.setenv("APP_URL", "")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("AUTH_PROVIDER_URL", "")
    for name, value in BILLING_ENV.items():
        if billing:
            monkeypatch.setenv(name, value)
        else:
            monkeypatch.delenv(name, raising=False)

    # Reload modules so configuration changes take effect cleanly.
    module_order = [
        "cloudbox.config",
        "cloudbox.db",
        "cloudbox.api.deps",
        "cloudbox.api.routes",
        "cloudbox.api.billing",
        "cloudbox.main",
    ]

    for module_name in module_order:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    main = sys.modules["cloudbox.main"]

    test_client = TestClient(main.app)
    test_client.storage_dir = tmp_path / "blobs"  # type: ignore[attr-defined]
    return test_client


def _login(client, user_id="u1"):
    client.cookies.set("session", f"custom_{user_id}_1700000000")
    client.cookies.set("user_data", quote(json.dumps({"$id": user_id})))


def _upload(client, name="notes.txt", data=b"0123456789", content_type="text/plain"):
    response = client.post("/api/upload", files={"file": (name, data, content_type)}, data={"userId": "u1"})
    assert response.status_code == 200, response.text
    return response.json()


def _signed(client, event):
    payload = json.dumps(event).encode()
    timestamp = int(time.time())
    from cloudbox.services.billing import build_billing_signature

    signature = build_billing_signature(WEBHOOK_SECRET, timestamp, payload)
    return client.post(
        "/api/stripe/webhook",
        content=payload,
        headers={"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"},
    )


def _event(event_type, obj, event_id):
    return {"id": event_id, "type": event_type, "created": int(time.time()), "data": {"object": obj}}


CHECKOUT = {
    "id": "cs_1",
    "mode": "subscription",
    "client_reference_id": "u1",
    "customer": "cus_1",
    "subscription": "sub_1",
    "metadata": {"userId": "u1", "planId": "pro"},
}
INVOICE = {"id": "in_1", "subscription": "sub_1"}


@pytest.fixture
def client(tmp_path, monkeypatch):
    test_client = _prepare_client(tmp_path, monkeypatch)
    with test_client as c:
        _login(c)
        yield c


def test_upload_then_download(client):
    payload = _upload(client)
    assert payload["success"] is True
    assert payload["fileSize"] == 10
    assert payload["fileName"] == "notes.txt"
    assert payload["mimeType"] == "text/plain"
    assert payload["url"] == f"/api/proxy-download?fileId={payload['fileId']}"

    response = client.get(payload["url"] + "&inline=0")
    assert response.status_code == 200
    assert response.content == b"0123456789"
    assert response.headers["content-length"] == "10"
    assert response.headers["content-disposition"].startswith('attachment; filename="notes.txt"')

    inline = client.get(payload["url"] + "&inline=1")
    assert inline.headers["content-disposition"].startswith('inline; filename="notes.txt"')


def test_upload_requires_session(client):
    client.cookies.clear()
    response = client.post("/api/upload", files={"file": ("a.txt", b"a", "text/plain")})
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Not authenticated"}


def test_upload_rejects_foreign_user_id(client):
    response = client.post("/api/upload", files={"file": ("a.txt", b"a", "text/plain")}, data={"userId": "u2"})
    assert response.status_code == 401


def test_upload_without_file_is_bad_request(client):
    response = client.post("/api/upload", data={"userId": "u1"})
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_rejects_files_over_limit(tmp_path, monkeypatch):
    with _prepare_client(tmp_path, monkeypatch, max_size="1024") as c:
        _login(c)
        response = c.post("/api/upload", files={"file": ("too-big.bin", b"x" * 2048, "application/octet-stream")})
        assert response.status_code == 400
        assert "exceeds" in response.json()["error"]
        assert list(c.storage_dir.iterdir()) == []  # type: ignore[attr-defined]


def test_download_errors(client):
    assert client.get("/api/proxy-download").status_code == 400
    missing = client.get("/api/proxy-download?fileId=nope")
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "error": "File not found"}


def test_file_management_flow(client):
    file_id = _upload(client)["fileId"]

    renamed = client.patch(f"/api/files/{file_id}", json={"name": "renamed.txt"})
    assert renamed.json()["file"]["name"] == "renamed.txt"

    assert client.post(f"/api/files/{file_id}/favorite").json()["file"]["isFavorite"] is True
    favorites = client.get("/api/files?favorites=1").json()["files"]
    assert [f["id"] for f in favorites] == [file_id]

    client.post(f"/api/files/{file_id}/trash")
    assert client.get(f"/api/proxy-download?fileId={file_id}").status_code == 404
    assert client.get("/api/files").json()["files"] == []
    assert [f["id"] for f in client.get("/api/files?trash=1").json()["files"]] == [file_id]

    client.post(f"/api/files/{file_id}/restore")
    assert client.get(f"/api/proxy-download?fileId={file_id}").status_code == 200

    assert client.delete(f"/api/files/{file_id}").json() == {"success": True}
    assert client.get(f"/api/proxy-download?fileId={file_id}").status_code == 404
    assert list(client.storage_dir.iterdir()) == []  # type: ignore[attr-defined]


def test_foreign_files_look_missing(client):
    file_id = _upload(client)["fileId"]
    _login(client, "u2")

    assert client.patch(f"/api/files/{file_id}", json={"name": "mine.txt"}).status_code == 404
    assert client.delete(f"/api/files/{file_id}").status_code == 404
    assert client.get("/api/files").json()["files"] == []


def test_empty_trash(client):
    first = _upload(client, name="a.txt")["fileId"]
    second = _upload(client, name="b.txt")["fileId"]
    client.post(f"/api/files/{first}/trash")
    client.post(f"/api/files/{second}/trash")

    response = client.post("/api/files/trash/empty")

    assert response.json() == {"success": True, "deleted": 2}
    assert client.get("/api/files?trash=1").json()["files"] == []


def test_replace_points_record_at_new_blob(client):
    file_id = _upload(client)["fileId"]

    response = client.post(
        f"/api/files/{file_id}/replace",
        files={"file": ("notes-v2.txt", b"new contents", "text/plain")},
    )

    assert response.status_code == 200
    assert response.json()["file"]["size"] == len(b"new contents")
    assert client.get(f"/api/proxy-download?fileId={file_id}").content == b"new contents"
    blobs = [p for p in client.storage_dir.iterdir() if not p.name.endswith(".acl.json")]  # type: ignore[attr-defined]
    assert len(blobs) == 1


def test_usage_reports_totals_and_plan(client):
    _upload(client, data=b"12345")
    _upload(client, name="b.txt", data=b"123")

    usage = client.get("/api/files/usage").json()

    assert usage["totalFiles"] == 2
    assert usage["totalBytes"] == 8
    assert usage["plan"]["id"] == "free"


def test_metrics_and_health(client):
    before = client.get("/metrics").json()
    _upload(client)
    after = client.get("/metrics").json()

    assert after["uploads"] == before["uploads"] + 1
    assert client.get("/metrics").headers["Cache-Control"] == "no-store, no-cache, must-revalidate"
    assert client.get("/health").json() == {"status": "ok"}


def test_webhook_checkout_and_invoices(client):
    assert _signed(client, _event("checkout.session.completed", CHECKOUT, "evt_1")).status_code == 200

    subscription = client.get("/api/subscription").json()
    assert subscription["subscription"]["status"] == "active"
    assert subscription["subscription"]["isTrial"] is False
    assert subscription["subscription"]["planId"] == "pro"
    assert subscription["plan"]["id"] == "pro"

    _signed(client, _event("invoice.payment_failed", INVOICE, "evt_2"))
    assert client.get("/api/subscription").json()["subscription"]["status"] == "past_due"

    response = _signed(client, _event("invoice.payment_succeeded", INVOICE, "evt_3"))
    assert response.json() == {"received": True, "outcome": "applied"}
    assert client.get("/api/subscription").json()["subscription"]["status"] == "active"


def _trialing_subscription(status="trialing"):
    start = int(time.time())
    return {
        "id": "sub_1",
        "customer": "cus_1",
        "status": status,
        "current_period_start": start,
        "current_period_end": start + 14 * 86400,
        "trial_start": start,
        "trial_end": start + 14 * 86400,
        "items": {"data": [{"price": {"id": "price_pro_m"}}]},
        "metadata": {"userId": "u1"},
    }


def test_webhook_subscription_created_before_checkout(client):
    _signed(client, _event("customer.subscription.created", _trialing_subscription(), "evt_1"))

    response = _signed(client, _event("checkout.session.completed", CHECKOUT, "evt_2"))
    assert response.json() == {"received": True, "outcome": "unchanged"}
    subscription = client.get("/api/subscription").json()["subscription"]
    assert subscription["status"] == "trialing"
    assert subscription["isTrial"] is True

    _signed(client, _event("invoice.payment_failed", INVOICE, "evt_3"))
    assert client.get("/api/subscription").json()["subscription"]["status"] == "past_due"

    _signed(client, _event("checkout.session.completed", CHECKOUT, "evt_2"))
    assert client.get("/api/subscription").json()["subscription"]["status"] == "past_due"


def test_webhook_with_bad_signature_changes_nothing(client):
    payload = json.dumps(_event("checkout.session.completed", CHECKOUT, "evt_1")).encode()
    response = client.post(
        "/api/stripe/webhook",
        content=payload,
        headers={"Stripe-Signature": f"t={int(time.time())},v1=forged"},
    )

    assert response.status_code == 400
    subscription = client.get("/api/subscription").json()
    assert subscription["subscription"] is None
    assert subscription["plan"]["id"] == "free"


def test_webhook_for_unknown_user_is_rejected(client):
    checkout = dict(CHECKOUT, metadata={"planId": "pro"}, client_reference_id=None)
    response = _signed(client, _event("checkout.session.completed", checkout, "evt_1"))
    assert response.status_code == 400


def test_checkout_session_uses_known_customer(client):
    _signed(client, _event("checkout.session.completed", CHECKOUT, "evt_1"))
    seen = {}

    def handler(request):
        seen.update(parse_qs(request.content.decode()))
        return httpx.Response(200, json={"url": "https://pay.test/cs_2"})

    main = sys.modules["cloudbox.main"]
    deps = sys.modules["cloudbox.api.deps"]
    from cloudbox.services.billing import StripeBillingClient

    main.app.dependency_overrides[deps.get_billing_client] = lambda: StripeBillingClient(
        "sk_test", WEBHOOK_SECRET, deps.plan_prices, transport=httpx.MockTransport(handler)
    )
    try:
        response = client.post("/api/stripe/create-checkout-session", json={"planId": "pro", "billingCycle": "yearly"})
        missing_plan = client.post("/api/stripe/create-checkout-session", json={})
    finally:
        main.app.dependency_overrides.clear()

    assert response.json() == {"success": True, "url": "https://pay.test/cs_2"}
    assert seen["customer"] == ["cus_1"]
    assert seen["line_items[0][price]"] == ["price_pro_y"]
    assert missing_plan.status_code == 400


def test_portal_requires_billing_account(client):
    response = client.post("/api/stripe/create-portal-session", json={})
    assert response.status_code == 404


def test_trial_is_granted_once(client):
    first = client.post("/api/subscription/trial", json={"planId": "basic"})
    assert first.json()["subscription"]["status"] == "trialing"
    assert first.json()["subscription"]["isTrial"] is True

    second = client.post("/api/subscription/trial", json={"planId": "basic"})
    assert second.status_code == 400


def test_billing_endpoints_without_configuration(tmp_path, monkeypatch):
    with _prepare_client(tmp_path, monkeypatch, billing=False) as c:
        _login(c)
        response = c.post("/api/stripe/create-checkout-session", json={"planId": "pro"})
        assert response.status_code == 503
        assert response.json()["success"] is False
        assert c.post("/api/stripe/webhook", content=b"{}").status_code == 503


def test_plans_catalogue(client):
    plans = client.get("/api/plans").json()["plans"]
    assert [plan["id"] for plan in plans] == ["free", "basic", "pro", "enterprise"]
    assert plans[-1]["fileUploadLimit"] == -1
