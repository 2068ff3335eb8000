from esign.models.document import (
    Document,
    DocumentStatus,
    Recipient,
    RecipientRole,
    RecipientStatus,
    SigningFlow,
)
from esign.models.document_event import DocumentEvent, DocumentEventAction

__all__ = [
    "Document",
    "DocumentStatus",
    "Recipient",
    "RecipientRole",
    "RecipientStatus",
    "SigningFlow",
    "DocumentEvent",
    "DocumentEventAction",
]
