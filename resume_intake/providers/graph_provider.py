"""Microsoft Graph implementation of :class:`EmailProvider`."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import structlog

from ..config import GraphConfig, RetryConfig
from ..errors import MalformedFileError
from ..models import EmailAttachment, EmailMessage, MailFolder, MessageDetails, MessagePage
from .eligibility import AttachmentPolicy
from .graph_client import GraphClient
from .interface import EmailProvider

logger = structlog.get_logger()

FILE_ATTACHMENT_TYPE = "#microsoft.graph.fileAttachment"
_MESSAGE_FIELDS = "id,subject,from,receivedDateTime,hasAttachments,parentFolderId,conversationId"


def _parse_datetime(value: str | None) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _format_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_message(data: dict[str, Any], folder_id: str | None = None) -> EmailMessage:
    sender = (data.get("from") or {}).get("emailAddress") or {}
    return EmailMessage(
        external_id=data["id"],
        subject=data.get("subject") or "",
        from_name=sender.get("name") or "",
        from_address=sender.get("address") or "",
        received_at=_parse_datetime(data.get("receivedDateTime")),
        has_attachments=bool(data.get("hasAttachments")),
        folder_id=folder_id or data.get("parentFolderId"),
        thread_id=data.get("conversationId"),
    )


def _parse_attachment(data: dict[str, Any]) -> EmailAttachment:
    return EmailAttachment(
        id=data["id"],
        name=data.get("name") or "",
        content_type=data.get("contentType") or "application/octet-stream",
        size=int(data.get("size") or 0),
        is_file=data.get("@odata.type") == FILE_ATTACHMENT_TYPE,
    )


def _parse_folder(data: dict[str, Any], parent_id: str | None) -> MailFolder:
    return MailFolder(
        id=data["id"],
        display_name=data.get("displayName") or "",
        parent_id=data.get("parentFolderId") or parent_id,
        child_folder_count=int(data.get("childFolderCount") or 0),
        well_known_name=data.get("wellKnownName"),
    )


class GraphEmailProvider(EmailProvider):
    """Reads a shared or user mailbox through the Graph ``/users/{id}`` API."""

    def __init__(
        self,
        config: GraphConfig,
        retry_config: RetryConfig,
        policy: AttachmentPolicy,
        client: GraphClient | None = None,
    ) -> None:
        self._config = config
        self._policy = policy
        self._client = client or GraphClient(config, retry_config)

    async def start(self) -> None:
        await self._client.start()

    async def close(self) -> None:
        await self._client.stop()

    @staticmethod
    def _user_path(mailbox: str) -> str:
        return f"/users/{quote(mailbox, safe='@')}"

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def search_messages(
        self,
        mailbox: str,
        query: str,
        *,
        restrict_to_attachments: bool = True,
        cursor: str | None = None,
    ) -> MessagePage:
        if cursor:
            data = await self._client.get_json(cursor, eventual_consistency=True)
        else:
            params: dict[str, Any] = {
                "$search": f'"{query.replace(chr(34), "")}"',
                "$top": self._config.page_size,
                "$select": _MESSAGE_FIELDS,
            }
            if restrict_to_attachments:
                params["$filter"] = "hasAttachments eq true"
            data = await self._client.get_json(
                f"{self._user_path(mailbox)}/messages",
                params=params,
                eventual_consistency=True,
            )
        return MessagePage(
            messages=[_parse_message(m) for m in data.get("value", [])],
            next_cursor=data.get("@odata.nextLink"),
        )

    async def list_folders(self, mailbox: str, parent_id: str | None = None) -> list[MailFolder]:
        if parent_id is None:
            path = f"{self._user_path(mailbox)}/mailFolders"
        else:
            path = f"{self._user_path(mailbox)}/mailFolders/{parent_id}/childFolders"

        folders: list[MailFolder] = []
        data = await self._client.get_json(path, params={"$top": self._config.folder_page_size})
        while True:
            folders.extend(_parse_folder(f, parent_id) for f in data.get("value", []))
            next_link = data.get("@odata.nextLink")
            if not next_link:
                break
            data = await self._client.get_json(next_link)
        return folders

    async def list_folder_messages(
        self,
        mailbox: str,
        folder_id: str,
        *,
        since: datetime,
        cursor: str | None = None,
    ) -> MessagePage:
        if cursor:
            data = await self._client.get_json(cursor)
        else:
            data = await self._client.get_json(
                f"{self._user_path(mailbox)}/mailFolders/{folder_id}/messages",
                params={
                    "$filter": f"receivedDateTime ge {_format_datetime(since)} and hasAttachments eq true",
                    "$orderby": "receivedDateTime desc",
                    "$top": self._config.page_size,
                    "$select": _MESSAGE_FIELDS,
                },
            )
        return MessagePage(
            messages=[_parse_message(m, folder_id) for m in data.get("value", [])],
            next_cursor=data.get("@odata.nextLink"),
        )

    # ------------------------------------------------------------------
    # Message + attachments
    # ------------------------------------------------------------------

    async def get_message(self, mailbox: str, external_id: str) -> MessageDetails:
        base = f"{self._user_path(mailbox)}/messages/{external_id}"
        message = _parse_message(await self._client.get_json(base, params={"$select": _MESSAGE_FIELDS}))
        data = await self._client.get_json(
            f"{base}/attachments",
            params={"$select": "id,name,contentType,size", "$top": 50},
        )
        attachments = [_parse_attachment(a) for a in data.get("value", [])]
        eligible = self._policy.filter(attachments)
        logger.debug(
            "graph_message_fetched",
            message_id=external_id,
            attachments=len(attachments),
            eligible=len(eligible),
        )
        return MessageDetails(message=message, eligible_attachments=eligible)

    async def get_attachment_bytes(self, mailbox: str, message_id: str, attachment_id: str) -> bytes:
        data = await self._client.get_json(
            f"{self._user_path(mailbox)}/messages/{message_id}/attachments/{attachment_id}"
        )
        if data.get("@odata.type") != FILE_ATTACHMENT_TYPE:
            raise MalformedFileError(f"attachment {attachment_id} is not a file attachment")
        content = data.get("contentBytes")
        if not content:
            raise MalformedFileError(f"attachment {attachment_id} has no content bytes")
        return base64.b64decode(content)
