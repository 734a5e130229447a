import logging
import secrets

from sqlmodel import Session, select

from db import engine, User
from plans import get_plan


class AccountNotFoundError(LookupError):
    pass


def _load(session: Session, user_id: int) -> User:
    user = session.exec(select(User).where(User.id == user_id)).first()
    if not user:
        raise AccountNotFoundError(user_id)
    return user


def enable_two_factor(user_id: int):
    with Session(engine) as session:
        user = _load(session, user_id)
        user.two_factor_enabled = True
        session.add(user)
        session.commit()
    logging.info("Two-factor enabled for user %s", user_id)


def sign_out_all(user_id: int) -> int:
    """Invalidate every auth cookie issued so far; returns the new session version."""
    with Session(engine) as session:
        user = _load(session, user_id)
        user.session_version = (user.session_version or 1) + 1
        session.add(user)
        session.commit()
        version = user.session_version
    logging.info("All sessions revoked for user %s", user_id)
    return version


def export_account_data(user_id: int) -> dict:
    with Session(engine) as session:
        user = _load(session, user_id)
        plan = get_plan(user.plan)
        return {
            "email": user.email,
            "plan": plan.tier.value,
            "plan_label": plan.label,
            "two_factor_enabled": bool(user.two_factor_enabled),
            "subscription_status": user.stripe_status,
            "created_at": user.created_at.isoformat() if user.created_at else None,
        }


def begin_deletion(user_id: int) -> str:
    """Issue a fresh confirmation nonce; any earlier one stops working."""
    nonce = secrets.token_urlsafe(16)
    with Session(engine) as session:
        user = _load(session, user_id)
        user.delete_nonce = nonce
        session.add(user)
        session.commit()
    return nonce


def cancel_deletion(user_id: int):
    with Session(engine) as session:
        user = _load(session, user_id)
        user.delete_nonce = None
        session.add(user)
        session.commit()
    logging.info("Account deletion cancelled for user %s", user_id)


def delete_account(user_id: int):
    with Session(engine) as session:
        user = _load(session, user_id)
        session.delete(user)
        session.commit()
    logging.info("Account deleted for user %s", user_id)
