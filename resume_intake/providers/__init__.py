from .eligibility import AttachmentPolicy
from .graph_client import GraphClient
from .graph_provider import GraphEmailProvider
from .interface import EmailProvider

__all__ = ["AttachmentPolicy", "EmailProvider", "GraphClient", "GraphEmailProvider"]
