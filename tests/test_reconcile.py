import pytest

from conftest import add_user
from vulnz.errors import NotFoundError, ValidationError
from vulnz.services.reconcile import (
    diff_components,
    find_or_create_component,
    find_or_create_release,
    release_detail,
    replace_website_components,
    report_vulnerabilities,
)
from vulnz.storage import create_website, list_recent_changes, list_website_components


def _website(conn):
    user = add_user(conn, "owner@example.com")
    return create_website(conn, user.id, "example.com", "Example")


def test_find_or_create_is_stable(conn):
    first = find_or_create_component(conn, "akismet", "wordpress-plugin")
    second = find_or_create_component(conn, "akismet", "wordpress-plugin")
    assert first.id == second.id
    assert first.title == "akismet"

    release = find_or_create_release(conn, first.id, "5.3-beta1")
    again = find_or_create_release(conn, first.id, "5.3")
    assert release.id == again.id
    assert release.version == "5.3"


def test_unknown_component_type(conn):
    with pytest.raises(NotFoundError):
        report_vulnerabilities(conn, "drupal-module", "views", "1.0", ["https://example.com/a"])


def test_report_vulnerabilities_dedupes(conn):
    urls = ["https://wpscan.com/vulnerability/1", "https://wpscan.com/vulnerability/2"]
    release, inserted = report_vulnerabilities(conn, "wordpress-plugin", "contact-form-7", "5.8", urls)
    assert inserted == 2
    _, inserted = report_vulnerabilities(conn, "wordpress-plugin", "contact-form-7", "5.8", urls[:1])
    assert inserted == 0

    detail = release_detail(conn, "wordpress-plugin", "contact-form-7", "5.8")
    assert detail["id"] == release.id
    assert detail["has_vulnerabilities"] is True
    assert [item["url"] for item in detail["vulnerabilities"]] == urls


def test_report_vulnerabilities_rejects_bad_urls(conn):
    with pytest.raises(ValidationError):
        report_vulnerabilities(conn, "wordpress-plugin", "akismet", "1.0", "https://example.com")
    with pytest.raises(ValidationError) as excinfo:
        report_vulnerabilities(conn, "wordpress-plugin", "akismet", "1.0", ["ftp:/broken"])
    assert "Invalid URL format" in excinfo.value.message


def test_diff_components():
    old = [(1, 10), (2, 20), (3, 30)]
    new = [(1, 10), (2, 21), (4, 40)]
    changes = {change["component_id"]: change for change in diff_components(old, new)}
    assert changes[2]["change_type"] == "updated"
    assert changes[2]["old_release_id"] == 20
    assert changes[2]["new_release_id"] == 21
    assert changes[3]["change_type"] == "removed"
    assert changes[4]["change_type"] == "added"
    assert 1 not in changes


def test_replace_website_components_tracks_changes(conn):
    website = _website(conn)
    summary = replace_website_components(
        conn,
        website.id,
        {
            "wordpress-plugin": [
                {"slug": "akismet", "version": "5.0"},
                {"slug": "jetpack", "version": "12.1"},
            ],
            "wordpress-theme": [{"slug": "twentytwentyfour", "version": "1.0"}],
        },
    )
    assert summary.as_dict() == {"added": 3, "removed": 0, "updated": 0, "total": 3}

    summary = replace_website_components(
        conn,
        website.id,
        {"wordpress-plugin": [{"slug": "akismet", "version": "5.1"}]},
    )
    assert (summary.added, summary.removed, summary.updated) == (0, 1, 1)

    installed = {item.slug: item.version for item in list_website_components(conn, website.id)}
    # The theme type was not sent, so it is untouched.
    assert installed == {"akismet": "5.1", "twentytwentyfour": "1.0"}

    changes = list_recent_changes(conn, website.id)
    assert {change["change_type"] for change in changes} == {"added", "removed", "updated"}
    updated = [change for change in changes if change["change_type"] == "updated"][0]
    assert (updated["old_version"], updated["new_version"]) == ("5.0", "5.1")


def test_replace_without_tracking(conn):
    website = _website(conn)
    summary = replace_website_components(
        conn,
        website.id,
        {"npm-package": [{"slug": "lodash", "version": "4.17.21"}]},
        track_changes=False,
    )
    assert summary.total == 0
    assert list_recent_changes(conn, website.id) == []
    assert [item.component_type_slug for item in list_website_components(conn, website.id)] == ["npm-package"]


def test_replace_requires_slug_and_version(conn):
    website = _website(conn)
    with pytest.raises(ValidationError):
        replace_website_components(conn, website.id, {"wordpress-plugin": [{"slug": "akismet"}]})


def test_installed_components_carry_vulnerabilities(conn):
    website = _website(conn)
    replace_website_components(conn, website.id, {"wordpress-plugin": [{"slug": "akismet", "version": "5.0"}]})
    report_vulnerabilities(conn, "wordpress-plugin", "akismet", "5.0", ["https://example.com/advisory"])
    (item,) = list_website_components(conn, website.id)
    assert item.has_vulnerabilities
    assert item.vulnerabilities == ["https://example.com/advisory"]
