"""
QAForge
Blueprint registry and shared list helpers.
"""

from flask import request

LIST_LIMIT_DEFAULT = 200
LIST_LIMIT_MAX = 1000


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def paginate_query(query, default_limit=LIST_LIMIT_DEFAULT, max_limit=LIST_LIMIT_MAX):
    """Slice an artifact listing by ``?limit=&offset=``.

    Returns ``(items, total)`` where ``total`` counts the unsliced query.
    """
    limit = min(max(_int_arg("limit", default_limit), 1), max_limit)
    offset = max(_int_arg("offset", 0), 0)
    return query.limit(limit).offset(offset).all(), query.count()
