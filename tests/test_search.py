import pytest

from vulnz.errors import ValidationError
from vulnz.services.reconcile import find_or_create_release
from vulnz.services.search import build_fts_query, search_components
from vulnz.storage import create_component


def _seed(conn):
    akismet = create_component(conn, "akismet", "wordpress-plugin", "Akismet Anti-spam", "")
    create_component(conn, "akismet-extra", "wordpress-plugin", "Extra filters", "")
    create_component(conn, "spam-guard", "wordpress-plugin", "Guard, an Akismet alternative", "")
    create_component(conn, "lodash", "npm-package", "Lodash", "")
    for version in ("5.0", "5.10", "5.2"):
        find_or_create_release(conn, akismet.id, version)


def test_ranking_prefers_exact_slug(conn):
    _seed(conn)
    result = search_components(conn, "akismet")
    assert [item["slug"] for item in result["components"]] == ["akismet", "akismet-extra", "spam-guard"]
    assert result["total"] == 3


def test_exact_slug_leads_even_when_it_sorts_last(conn):
    for number in range(1, 16):
        create_component(conn, f"a{number:02d}-zeta", "wordpress-plugin", f"Plugin {number}", "")
    create_component(conn, "zeta", "wordpress-plugin", "Zeta", "")
    result = search_components(conn, "zeta", limit=5)
    slugs = [item["slug"] for item in result["components"]]
    assert slugs[0] == "zeta"
    assert slugs[1:] == ["a01-zeta", "a02-zeta", "a03-zeta", "a04-zeta"]
    assert result["total"] == 16


def test_releases_newest_first(conn):
    _seed(conn)
    (first, *_) = search_components(conn, "akismet", limit=1)["components"]
    assert [release["version"] for release in first["releases"]] == ["5.10", "5.2", "5.0"]


def test_pagination(conn):
    _seed(conn)
    page_two = search_components(conn, "akismet", page=2, limit=2)
    assert [item["slug"] for item in page_two["components"]] == ["spam-guard"]
    assert page_two["total"] == 3


def test_query_is_sanitized(conn):
    _seed(conn)
    result = search_components(conn, "lodash'; DROP TABLE components;--")
    assert "lodash" in [item["slug"] for item in result["components"]]
    assert search_components(conn, "akismet")["total"] == 3
    assert search_components(conn, "<lodash>")["components"][0]["slug"] == "lodash"


def test_empty_query_rejected(conn):
    with pytest.raises(ValidationError):
        search_components(conn, "  !!! ")


def test_build_fts_query():
    assert build_fts_query("contact form") == '"contact"* OR "form"*'
    assert build_fts_query("-- __") == ""
