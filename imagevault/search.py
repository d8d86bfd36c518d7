import logging

from .images import INFO_FIELDS, row_to_info
from .pagination import normalize_pagination, order_clause, paginated

logger = logging.getLogger("ImageVault")

_QUOTES = "\"'"


def build_fts_query(raw):
    """Turn user input into an FTS5 prefix query.

    Quotes are stripped, every whitespace-separated term gets a trailing ``*``
    and terms are AND-ed. Each term is quoted so characters like ``-`` or words
    like ``OR`` are matched literally.

    >>> build_fts_query('blonde "hair"')
    '"blonde"* "hair"*'
    """
    text = "".join(ch for ch in (raw or "") if ch not in _QUOTES)
    terms = []
    for word in text.split():
        word = word.rstrip("*")
        # Punctuation-only terms tokenize to nothing.
        if not any(ch.isalnum() for ch in word):
            continue
        terms.append(f'"{word}"*')
    return " ".join(terms)


class SearchEngine:
    def __init__(self, db):
        self.db = db

    async def search(self, query, include_deleted=False, pagination=None):
        limit, offset, sort_order = normalize_pagination(pagination)
        fts_query = build_fts_query(query)
        logger.debug(
            "search images: q=%r fts=%r include_deleted=%r limit=%d offset=%d sort=%s",
            query,
            fts_query,
            include_deleted,
            limit,
            offset,
            sort_order,
        )
        if not fts_query:
            return paginated([], 0, offset)

        deleted_clause = "" if include_deleted else "AND i.deleted_at IS NULL"
        base = f"""
            FROM images i
            JOIN images_fts ON images_fts.id = i.id
            WHERE images_fts MATCH ?
            {deleted_clause}
        """
        count = await self.db.select_one(f"SELECT COUNT(*) AS total {base}", (fts_query,))
        total = int(count["total"]) if count else 0

        fields = ", ".join(f"i.{f.strip()}" for f in INFO_FIELDS.split(","))
        rows = await self.db.select(
            f"SELECT {fields} {base} {order_clause(sort_order, alias='i')} LIMIT ? OFFSET ?",
            (fts_query, limit, offset),
        )
        logger.debug("search rows=%d total=%d", len(rows), total)
        return paginated([row_to_info(r) for r in rows], total, offset)

    async def index_snapshot(self):
        """``(id, prompt)`` pairs currently held by the text index."""
        rows = await self.db.select("SELECT id, prompt FROM images_fts ORDER BY id ASC")
        return [(r["id"], r["prompt"]) for r in rows]

    async def rebuild_index(self):
        async with self.db.transaction():
            await self.db.execute("DELETE FROM images_fts")
            await self.db.execute("INSERT INTO images_fts(id, prompt) SELECT id, prompt FROM images")
        logger.info("Text index rebuilt")
