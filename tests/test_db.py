from db import EXTRA_COLUMNS, User


def test_created_at_is_timezone_aware():
    user = User(email="tz@example.com", password_hash="x")
    assert user.created_at.tzinfo is not None
    assert user.created_at.utcoffset().total_seconds() == 0


def test_added_columns_use_portable_defaults():
    assert EXTRA_COLUMNS["two_factor_enabled"] == "BOOLEAN DEFAULT FALSE"
    assert "delete_nonce" in EXTRA_COLUMNS
