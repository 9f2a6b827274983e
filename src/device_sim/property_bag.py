"""Property bag encoding for topic names.

A property bag is an ordered mapping of property name to either ``None`` (a flag
property) or a string value. Properties whose name starts with ``$`` are reserved
system properties and are always rendered after the application properties.
"""

from typing import Optional
from urllib.parse import quote, unquote

PropertyBag = dict[str, Optional[str]]

# Characters left unescaped in addition to quote()'s defaults, so the output
# matches encodeURIComponent (unreserved: A-Z a-z 0-9 - _ . ! ~ * ' ( )).
_SAFE_CHARS = "!*'()"


def _encode_component(value: str) -> str:
    return quote(value, safe=_SAFE_CHARS)


def _encode_entry(key: str, value: Optional[str]) -> str:
    if value is None:
        return _encode_component(key)
    return f"{_encode_component(key)}={_encode_component(value)}"


def encode_property_bag(properties: Optional[PropertyBag] = None) -> str:
    """Encode a property bag for use in a topic name.

    Args:
        properties: The properties to encode, or None

    Returns:
        An empty string for an empty bag, the bare key for a bag holding a single
        flag property, otherwise the ``&``-joined entries with reserved ($) keys last.
        No leading ``?`` is included.
    """
    if not properties:
        return ""

    if len(properties) == 1:
        ((key, value),) = properties.items()
        if value is None:
            return _encode_component(key)

    regular = [(k, v) for k, v in properties.items() if not k.startswith("$")]
    reserved = [(k, v) for k, v in properties.items() if k.startswith("$")]
    return "&".join(_encode_entry(k, v) for k, v in regular + reserved)


def decode_property_bag(query: str) -> PropertyBag:
    """Decode a query-style property bag, e.g. the part of a topic after ``?``.

    Args:
        query: Encoded property bag, with or without a leading ``?``

    Returns:
        The decoded properties in the order they appear. Entries without ``=``
        decode to flag properties (value None).
    """
    properties: PropertyBag = {}
    for part in query.lstrip("?").split("&"):
        if not part:
            continue
        if "=" in part:
            key, value = part.split("=", 1)
            properties[unquote(key)] = unquote(value)
        else:
            properties[unquote(part)] = None
    return properties


def with_property_bag(path: str, properties: Optional[PropertyBag] = None) -> str:
    """Append an encoded property bag to a topic path.

    The single flag form is appended bare, every other non-empty bag after a ``?``.
    """
    encoded = encode_property_bag(properties)
    if not encoded:
        return path
    if properties is not None and len(properties) == 1 and next(iter(properties.values())) is None:
        return f"{path}{encoded}"
    return f"{path}?{encoded}"
