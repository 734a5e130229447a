import pytest

import app as app_module
from conftest import confirm_token, csrf, get_user, register


def test_public_routes(client):
    for path in ("/", "/pricing", "/privacy", "/contact-sales", "/login", "/register"):
        resp = client.get(path)
        assert resp.status_code == 200


def test_auth_required_routes_redirect(client):
    for path in ("/dashboard", "/billing", "/settings/security", "/settings/privacy", "/features/reports"):
        resp = client.get(path, follow_redirects=False)
        assert resp.status_code in (302, 303)
        assert resp.headers["location"] == "/login"


def test_settings_redirect(client):
    resp = client.get("/settings", follow_redirects=False)
    assert resp.status_code in (302, 303)


def test_pricing_lists_all_tiers(client):
    resp = client.get("/pricing")
    for label in ("Free", "Starter", "Professional", "Enterprise", "₹2,999", "₹6,999", "Custom"):
        assert label in resp.text


def test_dashboard_marks_locked_features(client):
    register(client)
    resp = client.get("/dashboard")
    assert resp.status_code == 200
    assert "Free Trial" in resp.text
    assert "Locked" in resp.text


def test_gated_feature_shows_upgrade_prompt(client):
    register(client)
    resp = client.get("/features/api_access")
    assert resp.status_code == 200
    assert "Upgrade to Professional" in resp.text
    assert "₹6,999" in resp.text
    assert "/month" in resp.text


def test_enterprise_feature_prompt_has_no_monthly_unit(client):
    register(client)
    resp = client.get("/features/dedicated_support")
    assert "Upgrade to Enterprise" in resp.text
    assert "Custom" in resp.text
    assert "/month" not in resp.text


def test_entitled_feature_renders_without_prompt(client):
    register(client, plan="professional")
    resp = client.get("/features/reports")
    assert resp.status_code == 200
    assert "upgrade-prompt" not in resp.text
    assert "included in your plan" in resp.text


def test_unknown_feature_is_404(client):
    register(client)
    resp = client.get("/features/time_travel")
    assert resp.status_code == 404


def test_upgrade_without_payment_gateway_shows_error(client):
    register(client)
    resp = client.post(
        "/upgrade",
        data={"csrf_token": csrf(client), "required_plan": "starter", "feature": "Reports"},
        follow_redirects=False,
    )
    assert resp.status_code == 503
    assert "Stripe is not configured." in resp.text


def test_upgrade_to_enterprise_goes_to_sales(client):
    register(client)
    resp = client.post(
        "/upgrade",
        data={"csrf_token": csrf(client), "required_plan": "enterprise"},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert resp.headers["location"] == "/contact-sales?plan=enterprise"


def test_upgrade_when_already_entitled_goes_to_billing(client):
    register(client, plan="professional")
    resp = client.post(
        "/upgrade",
        data={"csrf_token": csrf(client), "required_plan": "starter"},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert resp.headers["location"] == "/billing"


def test_upgrade_rejects_unknown_plan(client):
    register(client)
    resp = client.post(
        "/upgrade",
        data={"csrf_token": csrf(client), "required_plan": "gold"},
        follow_redirects=False,
    )
    assert resp.status_code == 400
    assert "Unknown plan." in resp.text


def test_privacy_panel_gates_export_for_free_plan(client):
    register(client)
    resp = client.get("/settings/privacy")
    assert "Upgrade to Starter" in resp.text
    assert "Delete Account" in resp.text

    resp = client.post("/settings/privacy/export", data={"csrf_token": csrf(client)}, follow_redirects=False)
    assert resp.status_code == 403


def test_export_for_starter_plan(client):
    email = register(client, plan="starter")
    resp = client.post("/settings/privacy/export", data={"csrf_token": csrf(client)}, follow_redirects=False)
    assert resp.status_code == 200
    assert "attachment" in resp.headers["content-disposition"]
    data = resp.json()
    assert data["email"] == email
    assert data["plan"] == "starter"


def test_enable_two_factor(client):
    email = register(client)
    resp = client.post("/settings/security/two-factor", data={"csrf_token": csrf(client)}, follow_redirects=False)
    assert resp.status_code == 303
    assert get_user(email).two_factor_enabled is True
    resp = client.get("/settings/security?message=2fa-enabled")
    assert "Two-factor authentication is now enabled." in resp.text


def test_sign_out_all_devices_revokes_existing_cookies(client):
    email = register(client)
    old_token = client.cookies.get("crm_auth")
    resp = client.post("/settings/security/sign-out-all", data={"csrf_token": csrf(client)}, follow_redirects=False)
    assert resp.status_code == 303
    assert get_user(email).session_version == 2
    resp = client.get("/dashboard", headers={"Cookie": f"crm_auth={old_token}"}, follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"


def request_deletion(client):
    resp = client.post("/settings/privacy/delete", data={"csrf_token": csrf(client)})
    assert resp.status_code == 200
    assert "cannot be recovered" in resp.text
    token = confirm_token(resp.text)
    assert token
    return token


def test_delete_account_after_confirmation(client):
    email = register(client)
    token = request_deletion(client)
    assert get_user(email) is not None
    assert get_user(email).delete_nonce

    resp = client.post(
        "/settings/privacy/delete/confirm",
        data={"csrf_token": csrf(client), "confirm_token": token},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert resp.headers["location"] == "/?deleted=1"
    assert get_user(email) is None


def test_cancel_invalidates_confirmation_token(client):
    email = register(client)
    token = request_deletion(client)

    resp = client.post(
        "/settings/privacy/delete/cancel",
        data={"csrf_token": csrf(client), "confirm_token": token},
        follow_redirects=False,
    )
    assert resp.headers["location"] == "/settings/privacy"
    assert get_user(email).delete_nonce is None

    resp = client.post(
        "/settings/privacy/delete/confirm",
        data={"csrf_token": csrf(client), "confirm_token": token},
        follow_redirects=False,
    )
    assert resp.status_code == 400
    assert get_user(email) is not None


def test_new_request_replaces_earlier_confirmation_token(client):
    email = register(client)
    first = request_deletion(client)
    request_deletion(client)
    resp = client.post(
        "/settings/privacy/delete/confirm",
        data={"csrf_token": csrf(client), "confirm_token": first},
        follow_redirects=False,
    )
    assert resp.status_code == 400
    assert get_user(email) is not None


def test_cancel_requires_csrf(client):
    email = register(client)
    token = request_deletion(client)
    resp = client.post(
        "/settings/privacy/delete/cancel",
        data={"confirm_token": token},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert get_user(email).delete_nonce is not None


def test_delete_confirm_without_confirmation_step_is_rejected(client):
    email = register(client)
    resp = client.post(
        "/settings/privacy/delete/confirm",
        data={"csrf_token": csrf(client), "confirm_token": "forged"},
        follow_redirects=False,
    )
    assert resp.status_code == 400
    assert get_user(email) is not None


def test_webhook_requires_secret(client):
    resp = client.post("/stripe/webhook", content=b"{}")
    assert resp.status_code == 400


def test_security_headers(client):
    resp = client.get("/")
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_displayed_prompt_cannot_be_activated_in_place():
    with pytest.raises(RuntimeError):
        app_module._render_only("starter")


def test_pages_render_with_request_first_template_api(client):
    register(client)
    resp = client.get("/settings/privacy")
    assert resp.status_code == 200
    assert resp.template.name == "settings_privacy.html"
    assert resp.context["panel"] == "privacy"


def test_webhook_checkout_completed_keeps_header_out_of_payment(client, monkeypatch):
    event = {
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_1", "subscription": "sub_1", "client_reference_id": "order_1"}},
    }
    captured = []
    original = app_module.payments.payment_response_from_session

    def recording(data, *args, **kwargs):
        payment = original(data, *args, **kwargs)
        captured.append(payment)
        return payment

    monkeypatch.setattr(app_module, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setattr(app_module.stripe.Webhook, "construct_event", lambda payload, sig, secret: event)
    monkeypatch.setattr(app_module.payments, "payment_response_from_session", recording)
    resp = client.post("/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    assert resp.status_code == 200
    assert captured[0].payment_id == "sub_1"
    assert captured[0].signature is None
