import pytest

from conftest import add_user
from vulnz.errors import ConflictError, NotFoundError
from vulnz.services.reconcile import attach_vulnerabilities, find_or_create_release, replace_website_components
from vulnz.storage import (
    create_component,
    create_website,
    delete_component,
    delete_website,
    get_component,
    list_website_components,
)


def _count(conn, table):
    return conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"]


def test_delete_component_removes_releases_and_vulnerabilities(conn):
    component = create_component(conn, "hello-dolly", "wordpress-plugin", "Hello Dolly", "")
    for version in ("1.6", "1.7"):
        release = find_or_create_release(conn, component.id, version)
        attach_vulnerabilities(conn, release.id, [f"https://wpscan.com/vulnerability/{version}"])
    assert _count(conn, "releases") == 2
    assert _count(conn, "vulnerabilities") == 2

    assert delete_component(conn, component.id) is True
    assert get_component(conn, component.id) is None
    assert _count(conn, "releases") == 0
    assert _count(conn, "vulnerabilities") == 0


def test_delete_website_removes_installed_components(conn):
    user = add_user(conn, "owner@example.com")
    site = create_website(conn, user.id, "example.com", "Example")
    replace_website_components(
        conn,
        site.id,
        {"wordpress-plugin": [{"slug": "akismet", "version": "5.3"}]},
        track_changes=False,
    )
    assert len(list_website_components(conn, site.id)) == 1

    assert delete_website(conn, site.id) is True
    assert _count(conn, "website_components") == 0
    assert _count(conn, "releases") == 1


def test_create_website_errors(conn):
    user = add_user(conn, "owner@example.com")
    create_website(conn, user.id, "example.com", "Example")
    with pytest.raises(ConflictError):
        create_website(conn, user.id, "example.com", "Again")
    with pytest.raises(NotFoundError):
        create_website(conn, user.id + 100, "other.example.com", "Orphan")
