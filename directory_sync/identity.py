"""
Identity normalization for directory principals.

Every "already a member" and duplicate decision in the sync jobs depends on the
comparison rules defined here: identities are trimmed and compared using
case-insensitive ordinal comparison.
"""

from typing import Optional


class InvalidIdentityError(ValueError):
    """Raised when a raw value cannot be used as an identity."""
    pass


class Identity:
    """
    A normalized user or group principal (usually an email address).

    The original spelling is kept in ``value`` for display and for calls to
    remote directories; equality, hashing and ordering use the lower-cased key.
    """

    __slots__ = ('value', 'key')

    def __init__(self, value: str):
        self.value = value
        self.key = value.lower()

    def __eq__(self, other):
        if isinstance(other, Identity):
            return self.key == other.key
        return NotImplemented

    def __ne__(self, other):
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __lt__(self, other):
        if isinstance(other, Identity):
            return self.key < other.key
        return NotImplemented

    def __hash__(self):
        return hash(self.key)

    def __str__(self):
        return self.value

    def __repr__(self):
        return f"Identity({self.value!r})"


def _clean(raw) -> str:
    if raw is None:
        raise InvalidIdentityError("Identity is empty")
    value = str(raw).strip()
    if not value:
        raise InvalidIdentityError("Identity is empty")
    return value


def normalize(raw) -> Identity:
    """
    Normalize a raw email-like principal name.

    Only a minimal shape check is applied: an ``@`` with at least one
    character on each side. Full RFC validation is intentionally not done.

    Args:
        raw: Raw identity value from a source row or remote listing

    Returns:
        Normalized Identity

    Raises:
        InvalidIdentityError: If the value is blank or not email-shaped
    """
    value = _clean(raw)
    at = value.find('@')
    if at <= 0 or at == len(value) - 1:
        raise InvalidIdentityError(f"Not an email address: '{value}'")
    return Identity(value)


def try_normalize(raw) -> Optional[Identity]:
    """Return the normalized identity, or None when the value is invalid."""
    try:
        return normalize(raw)
    except InvalidIdentityError:
        return None


def normalize_reference(raw) -> Identity:
    """
    Normalize a group reference that may be a plain name rather than an email.

    JumpCloud user groups and LDAP groups are addressed by name or DN, so only
    blank values are rejected.
    """
    return Identity(_clean(raw))
