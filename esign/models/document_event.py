"""
Document event log: tracks reconciliation, reminder and recovery activity.

Each row captures what happened to a document, when, and the before/after
values of any fields that changed.
"""
from sqlalchemy import Column, String, DateTime, Text, ForeignKey, JSON
from sqlalchemy.sql import func
from esign.database import Base
import enum
import uuid


class DocumentEventAction(str, enum.Enum):
    status_reconciled = "status_reconciled"
    reminder_sent = "reminder_sent"
    reminder_failed = "reminder_failed"
    reminders_scheduled = "reminders_scheduled"
    reminders_cleared = "reminders_cleared"
    recovery_applied = "recovery_applied"
    webhook_received = "webhook_received"
    recipient_delegated = "recipient_delegated"


class DocumentEvent(Base):
    __tablename__ = "esign_document_events"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    document_id = Column(
        String(36), ForeignKey("esign_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )

    action = Column(String(30), nullable=False, index=True)
    description = Column(Text, nullable=True)  # Human-readable summary
    source = Column(String(30), nullable=True)  # api, webhook, scheduler, sweep

    # JSON: {"changes": [{"entity": ..., "field": ..., "old": ..., "new": ...}], ...}
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<DocumentEvent {self.action} on {self.document_id}>"
