"""Field probing for challenge responses of unknown shape.

The direct-mode authorize response differs between identity server
versions. Each identifier is located by walking an ordered table of field
paths; the first path that resolves to a non-empty value wins, so the most
specific locations are listed first.
"""

from __future__ import annotations

import re
from typing import Any

# A path is a sequence of dict keys (str) and list indexes (int)
FieldPath = tuple[str | int, ...]

FLOW_ID_RULES: tuple[FieldPath, ...] = (
    ("flowId",),
    ("flowID",),
    ("sessionDataKey",),
    ("sessionDataKeyConsent",),
    ("sessionState",),
)

AUTHENTICATOR_ID_RULES: tuple[FieldPath, ...] = (
    ("nextStep", "authenticators", 0, "authenticatorId"),
    ("authenticatorId",),
    ("authenticators", 0, "authenticatorId"),
    ("authenticators", 0, "id"),
    ("authenticate", "authenticators", 0, "id"),
    ("stepInfo", "options", 0, "authenticatorId"),
    ("stepInfo", "options", 0, "id"),
)

AUTHN_HREF_RULES: tuple[FieldPath, ...] = (("links", 0, "href"),)

_AUTHN_LINK = re.compile(r"authn", re.IGNORECASE)


def resolve(data: Any, path: FieldPath) -> Any:
    """Follow ``path`` through nested dicts and lists, or return None."""
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or not 0 <= step < len(current):
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
        if current is None:
            return None
    return current


def probe(data: Any, rules: tuple[FieldPath, ...]) -> str | None:
    """Return the first non-empty scalar found by ``rules``, as a string."""
    for path in rules:
        value = resolve(data, path)
        if value is None or value == "" or isinstance(value, (dict, list, bool)):
            continue
        return str(value)
    return None


def find_authn_href(data: Any) -> str | None:
    """Locate the OTP submission URL, if the provider advertised one."""
    href = probe(data, AUTHN_HREF_RULES)
    if href:
        return href

    links = resolve(data, ("links",))
    if isinstance(links, list):
        for link in links:
            candidate = resolve(link, ("href",))
            if isinstance(candidate, str) and _AUTHN_LINK.search(candidate):
                return candidate
    return None
