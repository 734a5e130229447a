from pathlib import Path

from fastapi import FastAPI, Request, Form, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlmodel import Session, select
from passlib.context import CryptContext
from itsdangerous import URLSafeSerializer, URLSafeTimedSerializer, BadSignature
import secrets
import stripe
import time
import os
import logging

import accounts
import payments
from db import engine, init_db, User
from entitlements import (
    FEATURES,
    EntitlementQuery,
    UnknownFeatureError,
    can_access,
    get_feature,
    query_for_feature,
)
from plans import PLANS, PLAN_ORDER, PlanTier, UnknownPlanError, get_plan, parse_tier
from settings_panels import (
    PRIVACY,
    SECURITY,
    ConfirmationRequiredError,
    DeleteAccountFlow,
    DeleteState,
    panel_entries,
)
from upgrade_prompt import PromptOptions, render_plan_badge, render_upgrade_prompt

BASE_DIR = Path(__file__).resolve().parent

SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_TO_A_LONG_RANDOM_SECRET")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_PORTAL_RETURN_URL = os.getenv("STRIPE_PORTAL_RETURN_URL", f"{payments.APP_BASE_URL}/billing")
SALES_CONTACT_EMAIL = os.getenv("SALES_CONTACT_EMAIL", "sales@vinnora.com")
DELETE_CONFIRM_MAX_AGE = 60 * 10

app = FastAPI()
app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
cookie_signer = URLSafeSerializer(SECRET_KEY, salt="auth")
csrf_signer = URLSafeSerializer(SECRET_KEY, salt="csrf")
delete_signer = URLSafeTimedSerializer(SECRET_KEY, salt="delete-account")

logging.basicConfig(level=logging.INFO)
login_attempts = {}


def _now():
    return time.time()


def is_rate_limited_key(key: str, limit: int = 5, window_seconds: int = 600):
    now = _now()
    attempts = login_attempts.get(key, [])
    attempts = [t for t in attempts if now - t < window_seconds]
    login_attempts[key] = attempts
    return len(attempts) >= limit


def record_attempt(key: str):
    attempts = login_attempts.get(key, [])
    attempts.append(_now())
    login_attempts[key] = attempts


def clear_attempts(key: str):
    if key in login_attempts:
        del login_attempts[key]


def client_ip(request: Request):
    return request.client.host if request.client else "unknown"


def set_auth_cookie(resp: Response, user: User):
    token = cookie_signer.dumps({"user_id": user.id, "sv": user.session_version})
    secure_cookie = os.getenv("COOKIE_SECURE", "false").lower() == "true"
    resp.set_cookie(
        "crm_auth",
        token,
        httponly=True,
        samesite="lax",
        secure=secure_cookie,
        max_age=60 * 60 * 24 * 30,
        path="/",
    )


def get_user_from_request(request: Request):
    token = request.cookies.get("crm_auth")
    if not token:
        return None
    try:
        data = cookie_signer.loads(token)
        user_id = int(data.get("user_id"))
        version = int(data.get("sv", 0))
    except (BadSignature, ValueError, TypeError, AttributeError):
        return None
    with Session(engine) as session:
        user = session.exec(select(User).where(User.id == user_id)).first()
    if not user or user.session_version != version:
        return None
    return user


def get_or_set_csrf_token(request: Request):
    token = request.cookies.get("crm_csrf")
    if token:
        try:
            csrf_signer.loads(token)
            return token
        except BadSignature:
            pass
    token = csrf_signer.dumps(secrets.token_urlsafe(16))
    return token


def set_csrf_cookie(resp: Response, token: str):
    secure_cookie = os.getenv("COOKIE_SECURE", "false").lower() == "true"
    resp.set_cookie(
        "crm_csrf",
        token,
        httponly=False,
        samesite="lax",
        secure=secure_cookie,
        max_age=60 * 60 * 6,
        path="/",
    )


def validate_csrf(request: Request, form_token: str):
    cookie_token = request.cookies.get("crm_csrf")
    if not form_token or not cookie_token:
        return False
    if form_token != cookie_token:
        return False
    try:
        csrf_signer.loads(form_token)
    except BadSignature:
        return False
    return True


def render_template(template: str, context: dict, status_code: int = 200):
    request = context.get("request")
    token = get_or_set_csrf_token(request) if request else None
    if token:
        context["csrf_token"] = token
    user = context.get("user")
    if user is not None and "plan_badge" not in context:
        context["plan_badge"] = render_plan_badge(user.plan)
    resp = templates.TemplateResponse(request, template, context, status_code=status_code)
    if token:
        set_csrf_cookie(resp, token)
    return resp


def prompt_options(request: Request, style_class: str = ""):
    return PromptOptions(style_class=style_class, csrf_token=get_or_set_csrf_token(request))


def _render_only(plan: str):
    """Callback for displayed prompts; activation only happens through POST /upgrade."""
    raise RuntimeError(f"upgrade prompt for {plan} activated outside POST /upgrade")


@app.on_event("startup")
def on_startup():
    init_db()


@app.middleware("http")
async def security_headers(request: Request, call_next):
    resp = await call_next(request)
    resp.headers["X-Frame-Options"] = "DENY"
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    return resp


@app.exception_handler(404)
def not_found(request: Request, exc):
    return render_template("404.html", {"request": request}, status_code=404)


@app.exception_handler(500)
def server_error(request: Request, exc):
    return render_template("500.html", {"request": request}, status_code=500)


@app.exception_handler(UnknownPlanError)
def unknown_plan(request: Request, exc: UnknownPlanError):
    logging.warning("Rejected unknown plan value %r on %s", exc.value, request.url.path)
    return render_template("400.html", {"request": request, "error": "Unknown plan."}, status_code=400)


@app.exception_handler(ConfirmationRequiredError)
def confirmation_required(request: Request, exc: ConfirmationRequiredError):
    logging.warning("Destructive action without confirmation on %s: %s", request.url.path, exc)
    return render_template(
        "400.html",
        {"request": request, "error": "Please confirm this action before continuing."},
        status_code=400,
    )


@app.get("/", response_class=HTMLResponse)
def home(request: Request):
    user = get_user_from_request(request)
    deleted = request.query_params.get("deleted") == "1"
    return render_template(
        "index.html",
        {"request": request, "user": user, "plans": [PLANS[tier] for tier in PLAN_ORDER], "deleted": deleted},
    )


@app.get("/pricing", response_class=HTMLResponse)
def pricing_page(request: Request):
    user = get_user_from_request(request)
    return render_template(
        "pricing.html",
        {
            "request": request,
            "user": user,
            "plans": [PLANS[tier] for tier in PLAN_ORDER],
            "current_plan": user.plan if user else None,
        },
    )


@app.get("/privacy", response_class=HTMLResponse)
def privacy_page(request: Request):
    return render_template("privacy.html", {"request": request, "user": get_user_from_request(request)})


@app.get("/contact-sales", response_class=HTMLResponse)
def contact_sales_page(request: Request):
    return render_template(
        "contact_sales.html",
        {
            "request": request,
            "user": get_user_from_request(request),
            "plan": get_plan(PlanTier.ENTERPRISE),
            "sales_email": SALES_CONTACT_EMAIL,
        },
    )


@app.get("/register", response_class=HTMLResponse)
def register_page(request: Request):
    return render_template("register.html", {"request": request, "error": None})


@app.post("/register", response_class=HTMLResponse)
def register(
    request: Request,
    csrf_token: str = Form(""),
    email: str = Form(...),
    password: str = Form(...),
):
    if not validate_csrf(request, csrf_token):
        return render_template("register.html", {"request": request, "error": "Session expired. Please try again."})
    ip = client_ip(request)
    if is_rate_limited_key(f"register:{ip}", limit=6, window_seconds=600):
        return render_template("register.html", {"request": request, "error": "Too many attempts. Try again later."})
    email = email.strip().lower()
    if len(password) > 72 or len(password) < 8:
        return render_template("register.html", {"request": request, "error": "Password must be 8–72 characters."})
    if len(email) > 120:
        return render_template("register.html", {"request": request, "error": "Email is too long."})
    pw_hash = pwd_context.hash(password)

    with Session(engine) as session:
        existing = session.exec(select(User).where(User.email == email)).first()
        if existing:
            record_attempt(f"register:{ip}")
            return render_template("register.html", {"request": request, "error": "Email already used."})

        user = User(email=email, password_hash=pw_hash, plan=PlanTier.FREE.value)
        session.add(user)
        session.commit()
        session.refresh(user)

    resp = RedirectResponse(url="/dashboard", status_code=303)
    set_auth_cookie(resp, user)
    record_attempt(f"register:{ip}")
    return resp


@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    return render_template("login.html", {"request": request, "error": None})


@app.post("/login", response_class=HTMLResponse)
def login(
    request: Request,
    csrf_token: str = Form(""),
    email: str = Form(...),
    password: str = Form(...),
):
    if not validate_csrf(request, csrf_token):
        return render_template("login.html", {"request": request, "error": "Session expired. Please try again."})
    ip = client_ip(request)
    if is_rate_limited_key(f"login:{ip}"):
        return render_template("login.html", {"request": request, "error": "Too many attempts. Try again later."})
    email = email.strip().lower()
    if len(password) > 72:
        return render_template("login.html", {"request": request, "error": "Invalid credentials."})

    with Session(engine) as session:
        user = session.exec(select(User).where(User.email == email)).first()
        if not user or not pwd_context.verify(password, user.password_hash):
            record_attempt(f"login:{ip}")
            return render_template("login.html", {"request": request, "error": "Invalid credentials."})

    resp = RedirectResponse(url="/dashboard", status_code=303)
    set_auth_cookie(resp, user)
    clear_attempts(f"login:{ip}")
    return resp


@app.get("/logout")
def logout():
    resp = RedirectResponse(url="/", status_code=303)
    resp.delete_cookie("crm_auth", path="/")
    return resp


@app.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)

    features = [
        {"feature": feature, "unlocked": can_access(user.plan, feature.key)}
        for feature in FEATURES.values()
    ]
    return render_template(
        "dashboard.html",
        {"request": request, "user": user, "active_page": "dashboard", "features": features},
    )


@app.get("/features/{feature_key}", response_class=HTMLResponse)
def feature_page(request: Request, feature_key: str):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    try:
        feature = get_feature(feature_key)
    except UnknownFeatureError:
        return not_found(request, None)

    prompt = render_upgrade_prompt(
        query_for_feature(user.plan, feature_key),
        _render_only,
        prompt_options(request),
    )
    return render_template(
        "feature.html",
        {"request": request, "user": user, "active_page": "dashboard", "feature": feature, "prompt": prompt},
    )


@app.post("/upgrade", response_class=HTMLResponse)
def upgrade(
    request: Request,
    csrf_token: str = Form(""),
    required_plan: str = Form(...),
    feature: str = Form(""),
):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    ip = client_ip(request)
    if is_rate_limited_key(f"checkout:{ip}", limit=6, window_seconds=600):
        return render_template("billing.html", {"request": request, "user": user, "active_page": "billing", "error": "Too many attempts. Try again later."})
    if not validate_csrf(request, csrf_token):
        return render_template("billing.html", {"request": request, "user": user, "active_page": "billing", "error": "Session expired. Please try again."})

    target = {}

    def on_upgrade(plan: str):
        if parse_tier(plan) is PlanTier.ENTERPRISE:
            target["url"] = f"/contact-sales?plan={plan}"
            return
        record_attempt(f"checkout:{ip}")
        target["url"] = payments.start_checkout(user.id, plan)

    query = EntitlementQuery(current_plan=user.plan, required_plan=required_plan, feature_label=feature)
    prompt = render_upgrade_prompt(query, on_upgrade, prompt_options(request))
    if prompt is None:
        return RedirectResponse(url="/billing", status_code=303)
    try:
        prompt.activate()
    except payments.CheckoutUnavailableError as exc:
        logging.warning("Checkout unavailable for user %s: %s", user.id, exc)
        return render_template(
            "billing.html",
            {"request": request, "user": user, "active_page": "billing", "prompt": prompt, "error": str(exc)},
            status_code=503,
        )
    return RedirectResponse(url=target["url"], status_code=303)


@app.get("/settings", response_class=HTMLResponse)
def settings_page(request: Request):
    return RedirectResponse(url="/settings/security", status_code=303)


def _render_panel(request: Request, user: User, panel: str, message: str = None, status_code: int = 200):
    entries = panel_entries(panel, user.plan, _render_only, prompt_options(request, "upgrade-prompt--inline"))
    return render_template(
        f"settings_{panel}.html",
        {
            "request": request,
            "user": user,
            "active_page": "settings",
            "panel": panel,
            "entries": entries,
            "message": message,
        },
        status_code=status_code,
    )


@app.get("/settings/security", response_class=HTMLResponse)
def security_settings(request: Request):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    return _render_panel(request, user, SECURITY, message=request.query_params.get("message"))


@app.get("/settings/privacy", response_class=HTMLResponse)
def privacy_settings(request: Request):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    return _render_panel(request, user, PRIVACY)


@app.post("/settings/security/two-factor")
def enable_two_factor(request: Request, csrf_token: str = Form("")):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    if not validate_csrf(request, csrf_token):
        return RedirectResponse(url="/settings/security", status_code=303)
    accounts.enable_two_factor(user.id)
    return RedirectResponse(url="/settings/security?message=2fa-enabled", status_code=303)


@app.post("/settings/security/sign-out-all")
def sign_out_all_devices(request: Request, csrf_token: str = Form("")):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    if not validate_csrf(request, csrf_token):
        return RedirectResponse(url="/settings/security", status_code=303)
    accounts.sign_out_all(user.id)
    resp = RedirectResponse(url="/login", status_code=303)
    resp.delete_cookie("crm_auth", path="/")
    return resp


@app.post("/settings/privacy/export")
def export_data(request: Request, csrf_token: str = Form("")):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    if not validate_csrf(request, csrf_token):
        return RedirectResponse(url="/settings/privacy", status_code=303)
    if not can_access(user.plan, "data_export"):
        return _render_panel(request, user, PRIVACY, message="export-locked", status_code=403)
    data = accounts.export_account_data(user.id)
    logging.info("Account data exported for user %s", user.id)
    return JSONResponse(
        data,
        headers={"Content-Disposition": 'attachment; filename="account-export.json"'},
    )


@app.post("/settings/privacy/delete", response_class=HTMLResponse)
def request_delete(request: Request, csrf_token: str = Form("")):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    if not validate_csrf(request, csrf_token):
        return RedirectResponse(url="/settings/privacy", status_code=303)
    flow = DeleteAccountFlow(on_delete=lambda: accounts.delete_account(user.id))
    flow.request()
    nonce = accounts.begin_deletion(user.id)
    confirm_token = delete_signer.dumps({"user_id": user.id, "state": flow.state.value, "nonce": nonce})
    return render_template(
        "delete_confirm.html",
        {
            "request": request,
            "user": user,
            "active_page": "settings",
            "warning": flow.warning,
            "confirm_token": confirm_token,
        },
    )


def _delete_state(token: str, user: User):
    """State carried by a confirmation token; only the user's latest nonce counts."""
    if not token or not user.delete_nonce:
        return DeleteState.IDLE
    try:
        data = delete_signer.loads(token, max_age=DELETE_CONFIRM_MAX_AGE)
    except BadSignature:
        return DeleteState.IDLE
    if data.get("user_id") != user.id or data.get("nonce") != user.delete_nonce:
        return DeleteState.IDLE
    return DeleteState(data.get("state", DeleteState.IDLE.value))


@app.post("/settings/privacy/delete/cancel")
def cancel_delete(request: Request, csrf_token: str = Form(""), confirm_token: str = Form("")):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    if not validate_csrf(request, csrf_token):
        return RedirectResponse(url="/settings/privacy", status_code=303)
    flow = DeleteAccountFlow(
        on_delete=lambda: accounts.delete_account(user.id),
        state=_delete_state(confirm_token, user),
    )
    flow.cancel()
    accounts.cancel_deletion(user.id)
    return RedirectResponse(url="/settings/privacy", status_code=303)


@app.post("/settings/privacy/delete/confirm")
def confirm_delete(request: Request, csrf_token: str = Form(""), confirm_token: str = Form("")):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    if not validate_csrf(request, csrf_token):
        return RedirectResponse(url="/settings/privacy", status_code=303)
    flow = DeleteAccountFlow(
        on_delete=lambda: accounts.delete_account(user.id),
        state=_delete_state(confirm_token, user),
    )
    flow.confirm()
    resp = RedirectResponse(url="/?deleted=1", status_code=303)
    resp.delete_cookie("crm_auth", path="/")
    return resp


@app.get("/billing", response_class=HTMLResponse)
def billing_page(request: Request):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    return render_template(
        "billing.html",
        {
            "request": request,
            "user": user,
            "active_page": "billing",
            "plans": [PLANS[tier] for tier in PLAN_ORDER],
            "current_plan": user.plan,
            "success":request.query_params.get("success") == "1",
            "canceled": request.query_params.get("canceled") == "1",
        },
    )


@app.post("/stripe/webhook")
async def stripe_webhook(request: Request):
    if not STRIPE_WEBHOOK_SECRET:
        return Response(status_code=400)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError):
        return Response(status_code=400)

    data = event["data"]["object"]
    event_type = event["type"]

    if event_type == "checkout.session.completed":
        payment = payments.payment_response_from_session(data)
        logging.info("Checkout completed order %s payment %s", payment.order_id, payment.payment_id)

    if event_type in ("customer.subscription.created", "customer.subscription.updated", "customer.subscription.deleted"):
        customer_id = data.get("customer")
        status = data.get("status")
        try:
            plan_state = payments.plan_from_subscription(data)
        except UnknownPlanError as exc:
            logging.warning("Subscription %s carries unknown plan %r", data.get("id"), exc.value)
            return Response(status_code=400)
        if event_type == "customer.subscription.deleted":
            plan_state = PlanTier.FREE
        with Session(engine) as session:
            user = session.exec(select(User).where(User.stripe_customer_id == customer_id)).first()
            if user:
                user.plan = plan_state.value
                user.stripe_subscription_id = data.get("id")
                user.stripe_status = status
                session.add(user)
                session.commit()
                logging.info("Stripe subscription update user %s plan %s status %s", user.id, plan_state.value, status)
    return Response(status_code=200)


@app.get("/billing/portal")
def billing_portal(request: Request):
    user = get_user_from_request(request)
    if not user:
        return RedirectResponse(url="/login", status_code=303)
    if not payments.STRIPE_SECRET_KEY or not user.stripe_customer_id:
        return RedirectResponse(url="/billing", status_code=303)
    stripe.api_key = payments.STRIPE_SECRET_KEY
    portal = stripe.billing_portal.Session.create(
        customer=user.stripe_customer_id,
        return_url=STRIPE_PORTAL_RETURN_URL,
    )
    return RedirectResponse(url=portal.url, status_code=303)
