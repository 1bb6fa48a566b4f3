"""Content-addressed deduplication of resume files."""

from __future__ import annotations

import hashlib

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db.models import Resume


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of the raw attachment bytes."""
    return hashlib.sha256(data).hexdigest()


class ContentAddressedDeduper:
    """Answers "has this exact file from this exact message produced a Resume?"

    Only the (hash, source message id) pair is a duplicate.  The same bytes
    arriving in a different message produce a separate Resume.
    """

    async def find_existing(
        self,
        session: AsyncSession,
        file_hash: str,
        source_message_id: str,
    ) -> Resume | None:
        result = await session.execute(
            select(Resume).where(
                Resume.content_hash == file_hash,
                Resume.source_message_id == source_message_id,
            )
        )
        return result.scalar_one_or_none()
