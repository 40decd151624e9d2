"""
Helpers for user-typed search text.
"""

LIKE_ESCAPE = "\\"


def contains_pattern(text: str) -> str:
    """
    Build a LIKE/ILIKE "contains" pattern, escaping the wildcards in ``text``.

    Use with ``column.ilike(pattern, escape=LIKE_ESCAPE)``.
    """
    escaped = (
        text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    return f"%{escaped}%"
