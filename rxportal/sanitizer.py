import bleach


def sanitize_text(value: str) -> str:
    """Return ``value`` with HTML stripped and surrounding whitespace removed.

    Used for admin-entered names that are echoed back into the dashboard.
    """
    return bleach.clean(value, tags=[], attributes={}, strip=True).strip()
