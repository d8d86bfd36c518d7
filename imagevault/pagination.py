from .constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE


def normalize_pagination(pagination=None):
    """Return ``(limit, offset, sort_order)`` from a pagination dict.

    Missing values fall back to 50 items, offset 0, newest first. A limit of 0
    returns no items but still reports the total.
    """
    pagination = pagination or {}
    try:
        limit = int(pagination.get("limit") if pagination.get("limit") is not None else DEFAULT_PAGE_SIZE)
    except (TypeError, ValueError):
        limit = DEFAULT_PAGE_SIZE
    limit = max(0, min(MAX_PAGE_SIZE, limit))
    try:
        offset = max(0, int(pagination.get("offset") or 0))
    except (TypeError, ValueError):
        offset = 0
    sort_order = str(pagination.get("sort_order") or "desc").strip().lower()
    if sort_order not in ("asc", "desc"):
        sort_order = "desc"
    return limit, offset, sort_order


def order_clause(sort_order, alias=""):
    direction = "ASC" if sort_order == "asc" else "DESC"
    col = f"{alias}." if alias else ""
    return f"ORDER BY {col}created_at {direction}, {col}id {direction}"


def paginated(items, total, offset):
    return {
        "items": items,
        "total": total,
        "has_more": offset + len(items) < total,
    }
