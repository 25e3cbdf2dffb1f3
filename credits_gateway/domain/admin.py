"""Admin override - identifiers with unlimited, unscored access"""

from decimal import Decimal
from typing import Iterable, Optional

UNLIMITED_BALANCE = Decimal("999999")


class AdminOverride:
    """Fixed allow-list of account ids and emails, loaded once per process"""

    def __init__(self, identifiers: Iterable[str] = ()):
        self._identifiers = frozenset(
            ident.strip().lower() for ident in identifiers if ident and ident.strip()
        )

    @classmethod
    def from_settings(cls, settings) -> "AdminOverride":
        return cls(settings.admin_identifiers.split(","))

    def is_admin(self, identifier: Optional[str]) -> bool:
        if not identifier:
            return False
        return identifier.strip().lower() in self._identifiers

    def unlimited_balance(self) -> Decimal:
        """Display-only sentinel; never use in arithmetic"""
        return UNLIMITED_BALANCE
