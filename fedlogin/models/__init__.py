from __future__ import annotations

from fedlogin.models.base import Base, TimestampMixin
from fedlogin.models.user import User

__all__ = [
    "Base",
    "TimestampMixin",
    "User",
]
