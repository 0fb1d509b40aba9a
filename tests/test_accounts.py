import pytest

from conftest import add_user, make_config
from vulnz.errors import AuthError, ForbiddenError, ValidationError
from vulnz.services.accounts import (
    authenticate,
    check_reset_token,
    create_account,
    generate_api_key,
    key_limit,
    register,
    request_password_reset,
    reset_password,
    start_session,
    update_account,
    user_for_api_key,
    user_for_session,
)
from vulnz.storage import delete_session, get_reset_token


def test_register_creates_plain_user(conn, cfg):
    user = register(conn, cfg, {"username": "new@example.com", "password": "Secret123"})
    assert user is not None
    assert user.roles == ["user"]
    assert authenticate(conn, "new@example.com", "Secret123").id == user.id


def test_register_existing_address_is_silent(conn, cfg):
    add_user(conn, "taken@example.com")
    assert register(conn, cfg, {"username": "taken@example.com", "password": "Other1234"}) is None
    # The original password still works.
    authenticate(conn, "taken@example.com", "Secret123")


def test_register_disabled(tmp_path, conn):
    cfg = make_config(tmp_path, app={"registration_enabled": False})
    with pytest.raises(ForbiddenError):
        register(conn, cfg, {"username": "new@example.com", "password": "Secret123"})


def test_setup_mode_registers_administrators(tmp_path, conn):
    cfg = make_config(tmp_path, app={"registration_enabled": False, "setup_mode": True})
    user = register(conn, cfg, {"username": "root@example.com", "password": "Secret123"})
    assert user is not None and user.is_admin


def test_create_account_validates_password(conn, cfg):
    with pytest.raises(ValidationError) as excinfo:
        create_account(conn, cfg, {"username": "weak@example.com", "password": "short"})
    assert "at least 8 characters" in excinfo.value.message


def test_create_account_rejects_bad_weekday(conn, cfg):
    with pytest.raises(ValidationError):
        create_account(
            conn,
            cfg,
            {"username": "a@example.com", "password": "Secret123", "reporting_weekday": "FUNDAY"},
        )


def test_weekday_is_normalized(conn, cfg):
    user = create_account(
        conn, cfg, {"username": "a@example.com", "password": "Secret123", "reporting_weekday": "wed"}
    )
    assert user.reporting_weekday == "WED"


def test_authenticate_failures(conn):
    add_user(conn, "user@example.com")
    add_user(conn, "blocked@example.com", blocked=True)
    with pytest.raises(AuthError):
        authenticate(conn, "user@example.com", "Wrong1234")
    with pytest.raises(AuthError):
        authenticate(conn, "nobody@example.com", "Secret123")
    with pytest.raises(AuthError) as excinfo:
        authenticate(conn, "blocked@example.com", "Secret123")
    assert excinfo.value.message == "User account is blocked."
    with pytest.raises(ValidationError):
        authenticate(conn, "", "")


def test_session_round_trip(conn, cfg):
    user = add_user(conn, "user@example.com")
    token, expires_at = start_session(conn, cfg, user)
    assert expires_at > "2000"
    assert user_for_session(conn, token).id == user.id
    delete_session(conn, token)
    assert user_for_session(conn, token) is None
    assert user_for_session(conn, None) is None


def test_api_key_limit(tmp_path, conn):
    cfg = make_config(tmp_path, auth={"max_api_keys_per_user": 2})
    user = add_user(conn, "user@example.com")
    keys = [generate_api_key(conn, cfg, user) for _ in range(2)]
    assert user_for_api_key(conn, keys[0].api_key).id == user.id
    with pytest.raises(ForbiddenError):
        generate_api_key(conn, cfg, user)


def test_key_limit_never_exceeds_global_ceiling(conn, cfg):
    generous = add_user(conn, "generous@example.com", max_api_keys=50)
    strict = add_user(conn, "strict@example.com", max_api_keys=1)
    assert key_limit(cfg, generous) == cfg.auth.max_api_keys_per_user
    assert key_limit(cfg, strict) == 1


def test_update_account_fields_and_roles(conn, cfg):
    user = add_user(conn, "user@example.com")
    updated = update_account(
        conn,
        cfg,
        user.id,
        {"paused": True, "reporting_email": "alerts@example.com", "roles": ["user", "administrator"]},
    )
    assert updated.paused is True
    assert updated.reporting_email == "alerts@example.com"
    assert updated.is_admin
    with pytest.raises(ValidationError):
        update_account(conn, cfg, user.id, {"reporting_email": "not-an-email"})


def test_password_reset_flow(conn, cfg, mailer):
    user = add_user(conn, "user@example.com")
    request_password_reset(conn, cfg, "user@example.com", mailer)
    (message,) = mailer.sent
    assert message["to"] == "user@example.com"
    token = message["text"].split("token=", 1)[1].split()[0]
    assert check_reset_token(conn, cfg, token)["user_id"] == user.id

    reset_password(conn, cfg, token, "Changed123")
    assert get_reset_token(conn, token) is None
    authenticate(conn, "user@example.com", "Changed123")
    with pytest.raises(ValidationError) as excinfo:
        reset_password(conn, cfg, token, "Changed456")
    assert excinfo.value.message == "Invalid or expired token."


def test_password_reset_ignores_unknown_and_blocked(conn, cfg, mailer):
    add_user(conn, "blocked@example.com", blocked=True)
    request_password_reset(conn, cfg, "nobody@example.com", mailer)
    request_password_reset(conn, cfg, "blocked@example.com", mailer)
    assert mailer.sent == []


def test_expired_reset_token(conn, cfg, mailer):
    add_user(conn, "user@example.com")
    request_password_reset(conn, cfg, "user@example.com", mailer)
    token = mailer.sent[0]["text"].split("token=", 1)[1].split()[0]
    conn.execute("UPDATE password_reset_tokens SET created_at = ?", ("2000-01-01T00:00:00+00:00",))
    with pytest.raises(ValidationError) as excinfo:
        check_reset_token(conn, cfg, token)
    assert excinfo.value.message == "Token has expired."
