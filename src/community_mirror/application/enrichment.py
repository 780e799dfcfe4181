"""Post-hoc cleanup of contributor profile fields."""

import re

_WHITESPACE = re.compile(r"\s+")


def normalize_affiliation(value: str) -> str:
    """
    Normalize a free-form company or location string.

    GitHub profiles often carry handles ("@cloudwego"), stray whitespace
    or trailing punctuation; these are reduced to a canonical spelling so
    contributors of the same company group together.
    """
    if not value:
        return ""
    text = _WHITESPACE.sub(" ", value).strip()
    text = text.lstrip("@").strip()
    return text.rstrip(".,;").strip()
