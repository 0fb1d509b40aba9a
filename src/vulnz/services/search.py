from __future__ import annotations

import logging
import re
from typing import Any

from ..errors import ValidationError
from ..normalize import sanitize_search_query, sort_by_version
from ..storage import escape_like, list_releases
from ..utils import log_event

logger = logging.getLogger("vulnz.search")

DEFAULT_LIMIT = 10

_WORD = re.compile(r"[A-Za-z0-9]")

# Tier order is the ranking: exact slug, slug substring, title substring,
# then full-text. A component matched by several tiers keeps its best one.
_TIERS = [
    "SELECT id FROM components WHERE slug = ?",
    "SELECT id FROM components WHERE slug LIKE ? ESCAPE '\\'",
    "SELECT id FROM components WHERE title LIKE ? ESCAPE '\\'",
]
_FTS_TIER = "SELECT rowid AS id FROM components_fts WHERE components_fts MATCH ?"


def build_fts_query(query: str) -> str:
    """OR together prefix terms; empty when nothing is indexable."""
    terms = [term for term in query.split() if _WORD.search(term)]
    return " OR ".join(f'"{term}"*' for term in terms)


def search_components(conn: Any, query: object, page: int = 1, limit: int = DEFAULT_LIMIT) -> dict[str, object]:
    cleaned = sanitize_search_query(query)
    if not cleaned:
        raise ValidationError("Search query is required.")
    page = max(int(page or 1), 1)
    limit = max(int(limit or DEFAULT_LIMIT), 1)
    offset = (page - 1) * limit

    pattern = f"%{escape_like(cleaned)}%"
    tiers = list(_TIERS)
    params: list[object] = [cleaned, pattern, pattern]
    fts_query = build_fts_query(cleaned)
    if fts_query:
        tiers.append(_FTS_TIER)
        params.append(fts_query)
    ranked_union = " UNION ALL ".join(
        f"SELECT id, {rank} AS priority FROM ({sql})" for rank, sql in enumerate(tiers, start=1)
    )

    rows = conn.execute(
        f"""
        WITH matches AS ({ranked_union}),
        ranked AS (
            SELECT id, MIN(priority) AS priority FROM matches GROUP BY id
        )
        SELECT c.id, c.slug, c.component_type_slug, c.title, c.url, c.description,
               c.synced_from_wporg, ranked.priority
        FROM ranked
        JOIN components c ON c.id = ranked.id
        ORDER BY ranked.priority ASC, c.slug ASC, c.id ASC
        LIMIT ? OFFSET ?
        """,
        params + [limit, offset],
    ).fetchall()
    total = int(
        conn.execute(f"SELECT COUNT(*) FROM ({' UNION '.join(tiers)})", params).fetchone()[0]
    )

    releases = list_releases(conn, [row["id"] for row in rows])
    components = []
    for row in rows:
        components.append(
            {
                "id": row["id"],
                "slug": row["slug"],
                "component_type_slug": row["component_type_slug"],
                "title": row["title"],
                "url": row["url"],
                "description": row["description"],
                "synced_from_wporg": bool(row["synced_from_wporg"]),
                "releases": sort_by_version(releases[row["id"]], key=lambda item: item["version"]),
            }
        )
    log_event(logger, logging.DEBUG, "component_search", query=cleaned, page=page, total=total)
    return {"components": components, "total": total}
