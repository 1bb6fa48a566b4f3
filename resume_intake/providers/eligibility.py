"""Attachment eligibility policy."""

from __future__ import annotations

from ..config import ImportConfig
from ..models import EmailAttachment


class AttachmentPolicy:
    """Decides which attachments are worth importing.

    An attachment is eligible when its name ends in an allowed extension,
    its size is within the ceiling, and it is a real file attachment
    rather than an embedded item or link.
    """

    def __init__(self, allowed_extensions: list[str], max_bytes: int) -> None:
        self.allowed_extensions = tuple(f".{ext.lower().lstrip('.')}" for ext in allowed_extensions)
        self.max_bytes = max_bytes

    @classmethod
    def from_config(cls, config: ImportConfig) -> AttachmentPolicy:
        return cls(config.extension_list, config.max_attachment_bytes)

    def is_eligible(self, attachment: EmailAttachment) -> bool:
        if not attachment.name.lower().endswith(self.allowed_extensions):
            return False
        if attachment.size > self.max_bytes:
            return False
        return attachment.is_file

    def filter(self, attachments: list[EmailAttachment]) -> list[EmailAttachment]:
        return [a for a in attachments if self.is_eligible(a)]
