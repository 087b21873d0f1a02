"""
Per-User Locks
==============

Transaction-scoped PostgreSQL advisory locks that serialize every state
change for one user. Different users never contend.

The lock is released automatically when the surrounding transaction
commits or rolls back.
"""

import uuid

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# Namespace so billing locks never collide with other advisory lock users
_LOCK_NAMESPACE = 0x5B11


def user_lock_key(user_id: uuid.UUID) -> int:
    """Signed 64-bit advisory lock key for a user."""
    folded = (user_id.int >> 64) ^ (user_id.int & 0xFFFFFFFFFFFFFFFF)
    folded ^= _LOCK_NAMESPACE
    if folded >= 1 << 63:
        folded -= 1 << 64
    return folded


async def lock_user(db: AsyncSession, user_id: uuid.UUID) -> None:
    """Block until this transaction holds the user's billing lock."""
    await db.execute(
        text("SELECT pg_advisory_xact_lock(:key)"),
        {"key": user_lock_key(user_id)},
    )
