"""Persistence for documents, recipients and their event log."""

import logging
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from esign.models.document import Document
from esign.models.document_event import DocumentEvent

logger = logging.getLogger(__name__)


class DocumentRepository:
    """Thin query layer over an AsyncSession.

    ``save`` commits; callers that batch several writes can use ``add_event``
    before a single ``save``.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, document_id: str) -> Optional[Document]:
        result = await self.db.execute(select(Document).where(Document.id == document_id))
        return result.scalar_one_or_none()

    async def find_by_agreement_id(self, agreement_id: str) -> Optional[Document]:
        result = await self.db.execute(select(Document).where(Document.remote_agreement_id == agreement_id))
        return result.scalar_one_or_none()

    async def find(
        self,
        statuses: Optional[Iterable[str]] = None,
        with_agreement: bool = False,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[Document], int]:
        """Documents filtered by status, newest first. Returns (items, total)."""
        query = select(Document)
        if statuses:
            query = query.where(Document.status.in_(list(statuses)))
        if with_agreement:
            query = query.where(Document.remote_agreement_id.isnot(None))

        count_result = await self.db.execute(select(func.count()).select_from(query.subquery()))
        total = count_result.scalar() or 0

        offset = (page - 1) * page_size
        result = await self.db.execute(
            query.order_by(Document.created_at.desc(), Document.id).offset(offset).limit(page_size)
        )
        return list(result.scalars().all()), total

    async def save(self, document: Document) -> Document:
        self.db.add(document)
        await self.db.commit()
        return document

    def add_event(
        self,
        document: Document,
        action: str,
        description: str,
        details: Optional[dict] = None,
        source: Optional[str] = None,
    ) -> DocumentEvent:
        event = DocumentEvent(
            document_id=document.id,
            action=action,
            description=description,
            details=details,
            source=source,
        )
        self.db.add(event)
        return event

    async def list_events(self, document_id: str, limit: int = 100) -> list[DocumentEvent]:
        result = await self.db.execute(
            select(DocumentEvent)
            .where(DocumentEvent.document_id == document_id)
            .order_by(DocumentEvent.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
