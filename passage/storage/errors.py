from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key rule rejects a write.

    ``constraint`` names the violated rule (``associate_provider_ref`` for the
    (provider, provider_ref_id) binding) so services can tell a lost
    find-or-create race apart from a genuine conflict.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


ASSOCIATE_PROVIDER_REF = "associate_provider_ref"
TWO_FACTOR_ACCOUNT = "two_factor_account"

__all__ = ["ConstraintViolation", "ASSOCIATE_PROVIDER_REF", "TWO_FACTOR_ACCOUNT"]
