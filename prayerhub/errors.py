"""
Exception types shared by the stores, the policy layer and the HTTP routes.
"""

from __future__ import annotations


class StoreError(Exception):
    """A persistence operation failed and was rolled back."""


class DuplicateError(StoreError):
    """A unique identity (username, email, membership pair) already exists."""


class RoleGuardError(Exception):
    """A membership change would leave a group or organization unmanaged."""


class LastLeaderError(RoleGuardError):
    pass


class LastAdminError(RoleGuardError):
    pass


class PrayingForError(Exception):
    pass


class AlreadyPrayingError(PrayingForError):
    pass


class NotPrayingError(PrayingForError):
    pass
