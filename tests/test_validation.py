from vulnz.config import load_config
from vulnz.validation import is_valid_email, normalize_weekday, validate_password, validate_username


def test_email_validation():
    assert is_valid_email("someone@example.com")
    assert not is_valid_email("someone@localhost")
    assert not is_valid_email("not an email")
    assert validate_username("bad") == ["Username must be a valid email address."]


def test_email_validation_rejects_trailing_newline():
    assert not is_valid_email("a@example.com\n")
    assert validate_username("a@example.com\n") == ["Username must be a valid email address."]


def test_password_rules_follow_config():
    rules = load_config(
        env={},
        overrides={"password": {"min_length": 10, "min_uppercase": 1, "min_symbols": 1}},
    ).password
    errors = validate_password("short1", rules)
    assert "Password must be at least 10 characters long." in errors
    assert "Password must contain at least 1 uppercase letters." in errors
    assert "Password must contain at least 1 symbols." in errors
    assert validate_password("LongEnough1!", rules) == []


def test_normalize_weekday():
    assert normalize_weekday("mon") == "MON"
    assert normalize_weekday("") is None
    assert normalize_weekday("FUNDAY") is None
