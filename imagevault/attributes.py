import logging
import warnings
from datetime import date, datetime

import yaml

from .constants import SENTINEL_PREFIX
from .errors import IndexingWarning

logger = logging.getLogger("ImageVault")


def _scalar_text(value):
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _is_list_scalar(value):
    # Booleans are excluded from sequences; only text and numbers are joined.
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def extract_attributes(tree, prefix="", _seen=None):
    """Flatten a structured prompt into ``{"key", "value"}`` pairs.

    Nested maps become dot paths (``appearance.hair.color``), scalar lists are
    comma-joined, ``None`` values and keys starting with ``_`` are skipped.
    Anything that is not a map yields an empty list.

    >>> extract_attributes({"a": {"b": "x", "c": [1, 2]}})
    [{'key': 'a.b', 'value': 'x'}, {'key': 'a.c', 'value': '1, 2'}]
    """
    if not isinstance(tree, dict):
        return []
    # YAML anchors can make the tree self-referencing.
    seen = _seen if _seen is not None else set()
    if id(tree) in seen:
        return []
    seen = seen | {id(tree)}

    attrs = []
    for k, v in tree.items():
        k = str(k)
        if k.startswith(SENTINEL_PREFIX):
            continue
        if v is None:
            continue
        key = f"{prefix}.{k}" if prefix else k

        if isinstance(v, dict):
            attrs.extend(extract_attributes(v, key, seen))
        elif isinstance(v, (list, tuple)):
            values = [str(item) for item in v if _is_list_scalar(item)]
            if values:
                attrs.append({"key": key, "value": ", ".join(values)})
        else:
            attrs.append({"key": key, "value": _scalar_text(v)})
    return attrs


def parse_prompt_tree(prompt):
    """Parse prompt text as YAML. Plain text prompts parse to a string, not a map."""
    if not prompt:
        return None
    return yaml.safe_load(prompt)


def attributes_from_prompt(prompt, tree=None, image_id=None):
    """Best-effort extraction; a parse failure is logged and yields no attributes.

    Besides the log record an ``IndexingWarning`` is issued through ``warnings``.
    """
    try:
        if tree is None:
            tree = parse_prompt_tree(prompt)
        return extract_attributes(tree)
    # Pathologically nested documents exhaust the recursion limit in the parser.
    except (yaml.YAMLError, ValueError, RecursionError) as exc:
        message = f"prompt of {image_id or '<new>'} is not structured data, attributes skipped: {exc}"
        logger.warning(message)
        warnings.warn(message, IndexingWarning, stacklevel=2)
        return []


class AttributeIndexer:
    def __init__(self, db):
        self.db = db

    extract = staticmethod(extract_attributes)

    async def save(self, image_id, attributes):
        """Replace the whole attribute set of an image."""
        rows = [(image_id, a["key"], a["value"]) for a in attributes]
        async with self.db.transaction():
            await self.db.execute("DELETE FROM image_attributes WHERE image_id = ?", (image_id,))
            if rows:
                # Two paths can flatten to the same key; the later one wins.
                await self.db.executemany(
                    "INSERT OR REPLACE INTO image_attributes(image_id, key, value) VALUES(?, ?, ?)",
                    rows,
                )

    async def get(self, image_id):
        return await self.db.select(
            "SELECT key, value FROM image_attributes WHERE image_id = ? ORDER BY key ASC",
            (image_id,),
        )

    async def search(self, key_pattern="", value_pattern=""):
        rows = await self.db.select(
            """
            SELECT DISTINCT image_id FROM image_attributes
            WHERE key LIKE ? AND value LIKE ?
            ORDER BY image_id ASC
            """,
            (f"%{key_pattern}%", f"%{value_pattern}%"),
        )
        return [r["image_id"] for r in rows]

