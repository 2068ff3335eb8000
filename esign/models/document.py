"""Signature workflow documents and their recipients."""
import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from esign.database import Base


class DocumentStatus(str, enum.Enum):
    uploaded = "uploaded"
    processing = "processing"
    ready_for_signature = "ready_for_signature"
    sent_for_signature = "sent_for_signature"
    out_for_signature = "out_for_signature"
    partially_signed = "partially_signed"
    completed = "completed"
    cancelled = "cancelled"
    expired = "expired"
    failed = "failed"


TERMINAL_DOCUMENT_STATUSES = frozenset({
    DocumentStatus.completed.value,
    DocumentStatus.cancelled.value,
    DocumentStatus.expired.value,
    DocumentStatus.failed.value,
})

# Documents the provider still owns; these are reconciled and reminded.
ACTIVE_DOCUMENT_STATUSES = frozenset({
    DocumentStatus.sent_for_signature.value,
    DocumentStatus.out_for_signature.value,
    DocumentStatus.partially_signed.value,
})


class RecipientStatus(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    viewed = "viewed"
    signed = "signed"
    declined = "declined"
    expired = "expired"
    waiting = "waiting"


class SigningFlow(str, enum.Enum):
    SEQUENTIAL = "SEQUENTIAL"
    PARALLEL = "PARALLEL"


class RecipientRole(str, enum.Enum):
    signer = "signer"
    approver = "approver"
    cc = "cc"


class Document(Base):
    """A document routed through the remote signing provider."""

    __tablename__ = "esign_documents"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), index=True)

    title = Column(String(255), nullable=False)
    original_name = Column(String(255), nullable=True)  # uploaded filename

    status = Column(String(30), default=DocumentStatus.uploaded.value, nullable=False, index=True)
    signing_flow = Column(String(20), default=SigningFlow.SEQUENTIAL.value, nullable=False)
    error_message = Column(Text, nullable=True)

    # Remote agreement
    remote_agreement_id = Column(String(100), nullable=True, unique=True, index=True)

    # Reminder campaign
    last_reminder_sent = Column(DateTime(timezone=True), nullable=True)
    reminder_count = Column(Integer, default=0, nullable=False)
    auto_reminders = Column(Boolean, default=False, nullable=False)
    reminder_urgency = Column(String(20), nullable=True)  # low, normal, high, critical
    reminder_schedule_hours = Column(String(200), nullable=True)  # custom offsets, comma separated
    next_reminder_at = Column(DateTime(timezone=True), nullable=True)

    # Recovery after ambiguous send failures
    recovery_applied = Column(Boolean, default=False, nullable=False)
    recovery_method = Column(String(30), nullable=True)  # verification, recipient_search, aggressive
    recovered_at = Column(DateTime(timezone=True), nullable=True)

    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    recipients = relationship(
        "Recipient",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Recipient.order",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DOCUMENT_STATUSES

    @property
    def is_sequential(self) -> bool:
        return self.signing_flow == SigningFlow.SEQUENTIAL.value

    def active_recipients(self) -> list["Recipient"]:
        """Recipients that have not been superseded by a delegation."""
        return [r for r in self.recipients if not r.delegated_to]

    def recipient_by_email(self, email: str | None) -> "Recipient | None":
        if not email:
            return None
        key = email.strip().lower()
        for recipient in self.active_recipients():
            if recipient.email and recipient.email.strip().lower() == key:
                return recipient
        return None

    def __repr__(self):
        return f"<Document {self.id} - {self.status}>"


class Recipient(Base):
    """One participant in a document's signing workflow."""

    __tablename__ = "esign_recipients"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    document_id = Column(
        String(36), ForeignKey("esign_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )

    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    order = Column("signing_order", Integer, default=1, nullable=False)  # 1-based
    role = Column(String(20), default=RecipientRole.signer.value, nullable=False)
    status = Column(String(20), default=RecipientStatus.pending.value, nullable=False)

    signed_at = Column(DateTime(timezone=True), nullable=True)
    last_reminder_sent = Column(DateTime(timezone=True), nullable=True)
    last_signing_url_accessed = Column(DateTime(timezone=True), nullable=True)

    # Set when this participant handed the signature off to someone else
    delegated_to = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    document = relationship("Document", back_populates="recipients")

    @property
    def is_signer(self) -> bool:
        return (self.role or RecipientRole.signer.value) != RecipientRole.cc.value

    def __repr__(self):
        return f"<Recipient {self.email} #{self.order} - {self.status}>"
