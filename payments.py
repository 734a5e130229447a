import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Optional

import stripe
from sqlmodel import Session, select

from db import engine, User
from plans import CURRENCY, PlanTier, get_plan, parse_tier

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY", "")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", CURRENCY).upper()
COMPANY_NAME = os.getenv("COMPANY_NAME", "Vinnora CRM")


class CheckoutUnavailableError(RuntimeError):
    pass


class CustomPricingError(ValueError):
    pass


@dataclass(frozen=True)
class CheckoutOptions:
    key: str
    amount: int
    currency: str
    name: str
    description: str = ""
    order_id: Optional[str] = None
    prefill: dict = field(default_factory=dict)
    notes: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentResponse:
    payment_id: str
    order_id: Optional[str] = None
    signature: Optional[str] = None


def checkout_options_for(tier, email: str, order_id: Optional[str] = None) -> CheckoutOptions:
    plan = get_plan(tier)
    if plan.amount is None:
        raise CustomPricingError(f"{plan.label} is priced by the sales team")
    return CheckoutOptions(
        key=STRIPE_PUBLISHABLE_KEY,
        amount=plan.amount,
        currency=CHECKOUT_CURRENCY,
        name=COMPANY_NAME,
        description=f"{plan.label} plan",
        order_id=order_id or f"order_{secrets.token_hex(8)}",
        prefill={"email": email},
        notes={"plan_type": plan.tier.value, "billing_cycle": "monthly"},
    )


def _get_customer_id(session: Session, user: User) -> str:
    if user.stripe_customer_id:
        return user.stripe_customer_id
    customer = stripe.Customer.create(email=user.email)
    user.stripe_customer_id = customer["id"]
    session.add(user)
    session.commit()
    return user.stripe_customer_id


def start_checkout(user_id: int, tier) -> str:
    """Create a monthly subscription checkout session and return its URL."""
    if not STRIPE_SECRET_KEY:
        raise CheckoutUnavailableError("Stripe is not configured.")
    stripe.api_key = STRIPE_SECRET_KEY
    with Session(engine) as session:
        user = session.exec(select(User).where(User.id == user_id)).first()
        if not user:
            raise CheckoutUnavailableError("Account not found.")
        options = checkout_options_for(tier, user.email)
        customer_id = _get_customer_id(session, user)

    checkout_session = stripe.checkout.Session.create(
        customer=customer_id,
        client_reference_id=options.order_id,
        line_items=[{
            "price_data": {
                "currency": options.currency.lower(),
                "unit_amount": options.amount,
                "recurring": {"interval": "month"},
                "product_data": {"name": f"{options.name} {options.description}"},
            },
            "quantity": 1,
        }],
        mode="subscription",
        metadata=options.notes,
        subscription_data={"metadata": options.notes},
        success_url=f"{APP_BASE_URL}/billing?success=1",
        cancel_url=f"{APP_BASE_URL}/billing?canceled=1",
    )
    logging.info("Stripe checkout session created for user %s plan %s", user_id, options.notes["plan_type"])
    return checkout_session.url


def payment_response_from_session(data: dict, signature: Optional[str] = None) -> PaymentResponse:
    return PaymentResponse(
        payment_id=data.get("subscription") or data.get("payment_intent") or data.get("id"),
        order_id=data.get("client_reference_id"),
        signature=signature,
    )


def plan_from_subscription(data: dict) -> PlanTier:
    """Tier a subscription event grants; inactive subscriptions fall back to free."""
    if data.get("status") not in ("active", "trialing"):
        return PlanTier.FREE
    metadata = data.get("metadata") or {}
    return parse_tier(metadata.get("plan_type", PlanTier.FREE.value))
