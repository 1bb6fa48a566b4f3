"""EmailProvider: the ABC every mailbox backend implements."""

from __future__ import annotations

import abc
from datetime import datetime

from ..models import MailFolder, MessageDetails, MessagePage


class EmailProvider(abc.ABC):
    """Abstract mailbox access used by search and the item pipeline.

    Listing calls return one page at a time together with an opaque
    continuation cursor; callers decide how far to page.  All message
    timestamps are UTC.
    """

    @abc.abstractmethod
    async def search_messages(
        self,
        mailbox: str,
        query: str,
        *,
        restrict_to_attachments: bool = True,
        cursor: str | None = None,
    ) -> MessagePage:
        """Run a provider-native full-text query across all folders.

        With *restrict_to_attachments* the provider is asked to drop
        messages without attachments server-side.  Providers that cannot
        honour that combination raise :class:`InefficientFilterError`.
        """
        ...

    @abc.abstractmethod
    async def list_folders(self, mailbox: str, parent_id: str | None = None) -> list[MailFolder]:
        """Return the direct children of *parent_id* (top level when ``None``)."""
        ...

    @abc.abstractmethod
    async def list_folder_messages(
        self,
        mailbox: str,
        folder_id: str,
        *,
        since: datetime,
        cursor: str | None = None,
    ) -> MessagePage:
        """List messages with attachments in one folder, newest first."""
        ...

    @abc.abstractmethod
    async def get_message(self, mailbox: str, external_id: str) -> MessageDetails:
        """Fetch a message and its eligible attachments."""
        ...

    @abc.abstractmethod
    async def get_attachment_bytes(self, mailbox: str, message_id: str, attachment_id: str) -> bytes:
        ...

    async def close(self) -> None:
        """Release network resources.  Default is a no-op."""
