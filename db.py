import os
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import inspect, text
from sqlmodel import SQLModel, Field, create_engine

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./app.db")
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    plan: str = Field(default="free")
    two_factor_enabled: bool = Field(default=False)
    session_version: int = Field(default=1)
    stripe_customer_id: Optional[str] = Field(default=None)
    stripe_subscription_id: Optional[str] = Field(default=None)
    stripe_status: Optional[str] = Field(default=None)
    delete_nonce: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


EXTRA_COLUMNS = {
    "plan": "TEXT DEFAULT 'free'",
    "two_factor_enabled": "BOOLEAN DEFAULT FALSE",
    "session_version": "INTEGER DEFAULT 1",
    "stripe_customer_id": "TEXT",
    "stripe_subscription_id": "TEXT",
    "stripe_status": "TEXT",
    "delete_nonce": "TEXT",
}


def init_db():
    SQLModel.metadata.create_all(engine)
    _ensure_columns()


def _ensure_columns():
    cols = {col["name"] for col in inspect(engine).get_columns("user")}
    with engine.begin() as conn:
        for col, ddl in EXTRA_COLUMNS.items():
            if col not in cols:
                conn.execute(text(f'ALTER TABLE "user" ADD COLUMN {col} {ddl}'))
