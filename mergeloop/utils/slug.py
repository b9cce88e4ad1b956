"""Branch-safe slugs."""

import re

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

DEFAULT_MAX_LENGTH = 40


def slugify(text: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Lowercase ``text`` and collapse non-alphanumeric runs into ``-``.

    The result is trimmed of separators at both ends, capped at
    ``max_length`` characters, and never ends in ``-``. It may be empty;
    callers supply their own fallback.

    Example:
        >>> slugify("Fix: the login page!!")
        'fix-the-login-page'
    """
    slug = _NON_ALNUM.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")
