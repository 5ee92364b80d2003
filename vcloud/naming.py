"""Display-name normalization for the control plane's naming rules."""

from typing import List

MAX_NAME_LENGTH = 13
PLACEHOLDER_NAME = "unnamed"


def normalize_name(name: str) -> str:
    """
    Turn a user-supplied display name into a valid remote name.

    The first kept character must be a letter; after that letters, digits
    and hyphens are kept, spaces become hyphens and everything else is
    dropped. Guest hostnames are derived from the result, so the 13
    character limit must not change.

    Examples:
        >>> normalize_name("My Web Server #1")
        'my-web-server'
        >>> normalize_name("42")
        'unnamed'
    """
    result = []

    for c in name.lower():
        if not result:
            if c.isalpha():
                result.append(c)
        elif c.isalpha() or c.isdecimal() or c == "-":
            result.append(c)
        elif c == " ":
            result.append("-")

    normalized = "".join(result) or PLACEHOLDER_NAME
    return normalized[:MAX_NAME_LENGTH]


def machine_hostnames(name: str, count: int) -> List[str]:
    """Hostnames for ``count`` machines; more than one gets a 1-based suffix."""
    base = normalize_name(name)
    if count < 2:
        return [base] * count
    return [f"{base}-{i}" for i in range(1, count + 1)]
