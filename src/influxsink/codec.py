"""Folding of tagged metric identities into flat registry keys.

The registry is keyed by plain strings, so a metric's name and tags are
encoded into one key when it is registered and decoded back when the
registry is flushed:

    >>> key = encode_name("requests", ["method", "code"], ["GET", "200"])
    >>> key
    'requests?code=200&method=GET'
    >>> decode_name(key)
    ('requests', {'code': '200', 'method': 'GET'})

The name is percent-escaped so it can never contain the ``?`` separator,
and tags are URL-encoded, so any character is allowed in names, keys and
values. Tags are sorted by key before encoding: the same pairs supplied in
a different order map to the same registry entry.
"""

from __future__ import annotations

from typing import Sequence
from urllib.parse import parse_qsl, quote, unquote, urlencode

TAG_SEPARATOR = "?"


def encode_name(
    name: str,
    tag_keys: Sequence[str] = (),
    tag_values: Sequence[str] = (),
) -> str:
    """Encode a name and tag set into a registry key.

    Args:
        name: Measurement name.
        tag_keys: Tag keys, paired positionally with tag_values.
        tag_values: Tag values.

    Returns:
        Registry key.

    Raises:
        ValueError: If the key and value sequences differ in length.
        UnicodeEncodeError: If a string holds an unpaired surrogate.
    """
    if len(tag_keys) != len(tag_values):
        raise ValueError(
            f"Tag mismatch for '{name}': "
            f"{len(tag_keys)} keys, {len(tag_values)} values"
        )

    escaped = quote(name, safe="")
    if not tag_keys:
        return escaped

    # Later duplicates override earlier ones
    tags = dict(zip(tag_keys, tag_values))
    return escaped + TAG_SEPARATOR + urlencode(sorted(tags.items()))


def decode_name(key: str) -> tuple[str, dict[str, str]]:
    """Decode a registry key into its name and tag map.

    Args:
        key: Key produced by encode_name.

    Returns:
        Tuple of (name, tags).
    """
    escaped, _, query = key.partition(TAG_SEPARATOR)
    tags = dict(parse_qsl(query, keep_blank_values=True)) if query else {}
    return unquote(escaped), tags
