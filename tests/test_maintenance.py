from conftest import add_user
from vulnz.maintenance import run_retention
from vulnz.services.accounts import start_session
from vulnz.storage import insert_api_call_log, insert_email_log, set_setting


def test_retention_purges_old_rows(conn, cfg):
    user = add_user(conn, "user@example.com")
    insert_email_log(conn, "user@example.com", "vulnerability_report", "sent")
    insert_email_log(conn, "user@example.com", "vulnerability_report", "sent")
    conn.execute("UPDATE email_logs SET sent_at = '2000-01-01T00:00:00+00:00' WHERE id = 1")
    insert_api_call_log(conn, user.id, "GET", "/api/websites", 200)
    token, _ = start_session(conn, cfg, user)
    conn.execute("UPDATE sessions SET expires_at = '2000-01-01T00:00:00+00:00' WHERE token = ?", (token,))

    removed = run_retention(conn)
    assert removed["email_logs"] == 1
    assert removed["api_call_logs"] == 0
    assert removed["sessions"] == 1
    assert conn.execute("SELECT COUNT(*) FROM email_logs").fetchone()[0] == 1


def test_zero_days_keeps_everything(conn):
    set_setting(conn, "retention.email_logs_days", 0, "integer", "Days to keep email logs", "retention")
    insert_email_log(conn, "user@example.com", "vulnerability_report", "sent")
    conn.execute("UPDATE email_logs SET sent_at = '2000-01-01T00:00:00+00:00'")
    removed = run_retention(conn)
    assert "email_logs" not in removed
    assert conn.execute("SELECT COUNT(*) FROM email_logs").fetchone()[0] == 1
