"""
URL query-string parsing for survey links.

Survey links carry parameters such as `?source=GITHUB&pid=42`. Values are
URL-decoded, a key that appears more than once collects its values in a list,
and a key without `=` maps to None.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Union
from urllib.parse import unquote_plus

QueryValue = Union[Optional[str], List[Optional[str]]]


def parse_query(url_or_query: Optional[str]) -> Dict[str, QueryValue]:
    """
    Parse a full URL or a bare query string into a dict.

    Examples
    --------
    >>> parse_query("https://example.com/s?name=John%20Doe&age=25")
    {'name': 'John Doe', 'age': '25'}
    >>> parse_query("?tag=a&tag=b&flag")
    {'tag': ['a', 'b'], 'flag': None}
    """
    if not url_or_query:
        return {}

    query = url_or_query
    if "?" in query:
        query = query.split("?", 1)[1]
    query = query.split("#", 1)[0]

    result: Dict[str, QueryValue] = {}
    for part in query.split("&"):
        if not part:
            continue
        if "=" in part:
            raw_key, raw_value = part.split("=", 1)
            value: Optional[str] = unquote_plus(raw_value)
        else:
            raw_key, value = part, None
        key = unquote_plus(raw_key)
        if not key:
            continue

        if key in result:
            existing = result[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[key] = [existing, value]
        else:
            result[key] = value
    return result


def first_value(value: QueryValue) -> Optional[str]:
    """Collapse a possibly repeated query value to its first occurrence."""
    if isinstance(value, list):
        return value[0] if value else None
    return value


__all__ = ["parse_query", "first_value", "QueryValue"]
