"""Email normalisation shared by index keys and lookup targets."""

from __future__ import annotations


def normalize_email(email: str) -> str:
    """Lowercase and strip surrounding whitespace."""
    return email.strip().lower()
