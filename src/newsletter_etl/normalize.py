"""Normalization functions for legacy newsletter rows.

All functions accept str | None (or a raw CLI value) and return the
appropriate type or None.
"""

from __future__ import annotations

from typing import Any

from newsletter_etl.shared import InvocationError

DEFAULT_STATUS = "pending"
SUBSCRIBED_STATUSES = frozenset({"confirmed", "pending"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: email_local_part
# ---------------------------------------------------------------------------

def email_local_part(email: str) -> str:
    """Return the part of an address before the first '@'."""
    return email.split("@", 1)[0]


# ---------------------------------------------------------------------------
# Rule 3: contact display name
# ---------------------------------------------------------------------------

def contact_name(name: str | None, email: str) -> str:
    """Subscriber name, or the email local part when the name is blank."""
    return trim(name) or email_local_part(email)


# ---------------------------------------------------------------------------
# Rule 4: status
# ---------------------------------------------------------------------------

def normalize_status(value: str | None) -> str:
    """Return the subscriber status, defaulting to 'pending' when absent."""
    v = trim(value)
    return v if v else DEFAULT_STATUS


def is_subscribed_status(status: str) -> bool:
    """True for statuses that map to the Subscribed system tag."""
    return status in SUBSCRIBED_STATUSES


# ---------------------------------------------------------------------------
# Rule 5: site filter
# ---------------------------------------------------------------------------

def parse_site_id(value: Any) -> int | None:
    """Parse an optional site filter into a positive int.

    None means "all sites". Anything else that is not a positive integer,
    including a blank string, raises InvocationError.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvocationError(f"invalid site id: {value!r}")
    if isinstance(value, int):
        site_id = value
    elif isinstance(value, str):
        v = trim(value)
        if v is None:
            raise InvocationError(f"invalid site id: {value!r}")
        try:
            site_id = int(v)
        except ValueError:
            raise InvocationError(f"invalid site id: {value!r}") from None
    else:
        raise InvocationError(f"invalid site id: {value!r}")
    if site_id <= 0:
        raise InvocationError(f"site id must be positive, got {site_id}")
    return site_id
