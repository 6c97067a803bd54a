"""
Privilege introspection for DAV collections.

Servers report ``current-user-privilege-set`` either as parsed XML or, in
some client libraries, as a nested mapping.  Both shapes are reduced to a
set of camelCase tokens (``write-content`` becomes ``writeContent``) before
any decision is made.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional

from .errors import FastmailError, ReadOnly

log = logging.getLogger(__name__)

WRITE_TOKENS = frozenset({"write", "writeContent", "writeProperties", "all"})
READ_TOKENS = frozenset({"read", "all"})

READ_ONLY_MESSAGE = "This calendar is read-only. Pick a calendar with canWrite=true from list_calendars."


@dataclass
class Rights:
    privileges: List[str] = field(default_factory=list)
    can_read: bool = False
    can_write: bool = False


def _camel(token: str) -> str:
    if "}" in token:
        token = token.split("}", 1)[1]
    if ":" in token:
        token = token.split(":", 1)[1]
    head, *rest = token.split("-")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def normalize_privileges(source: Any) -> List[str]:
    """
    Reduce a privilege-set representation to unique camelCase tokens in
    first-seen order.

    Accepts a parsed ``current-user-privilege-set`` element (ElementTree or
    lxml), a mapping whose ``privilege`` entry is one item or a list of
    items (keys starting with ``_`` or ``@`` are attributes and skipped),
    or an iterable of tag strings such as ``{DAV:}write-content``.
    """
    tokens: List[str] = []

    def _add(name: str) -> None:
        token = _camel(name)
        if token and token not in tokens:
            tokens.append(token)

    if source is None:
        return tokens
    if hasattr(source, "iter") and hasattr(source, "tag"):
        for privilege in source.iter("{DAV:}privilege"):
            for child in privilege:
                _add(child.tag)
        return tokens
    if isinstance(source, Mapping):
        items = source.get("privilege")
        if items is None:
            return tokens
        if not isinstance(items, list):
            items = [items]
        for item in items:
            if isinstance(item, Mapping):
                for key in item:
                    if key.startswith(("_", "@")):
                        continue
                    _add(key)
            elif isinstance(item, str):
                _add(item)
        return tokens
    if isinstance(source, str):
        _add(source)
        return tokens
    for item in source:
        if isinstance(item, str):
            _add(item)
    return tokens


def compute_rights(privileges: Iterable[str]) -> Rights:
    tokens = list(privileges)
    return Rights(
        privileges=tokens,
        can_read=any(token in READ_TOKENS for token in tokens),
        can_write=any(token in WRITE_TOKENS for token in tokens),
    )


async def get_rights(dav: Any, url: str) -> Optional[Rights]:
    """
    Introspect the current user's privileges on ``url``.

    Returns None ("unknown") when the server cannot be asked or reports an
    empty set; callers treat unknown as permitted.
    """
    try:
        element = await dav.fetch_privileges(url)
    except FastmailError as exc:
        log.debug("privilege introspection failed for %s: %s", url, exc)
        return None
    tokens = normalize_privileges(element)
    if not tokens:
        return None
    return compute_rights(tokens)


async def require_writable(dav: Any, url: str, message: str = READ_ONLY_MESSAGE) -> Optional[Rights]:
    rights = await get_rights(dav, url)
    if rights is not None and not rights.can_write:
        raise ReadOnly(message)
    return rights
