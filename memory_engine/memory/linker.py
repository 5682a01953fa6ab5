"""Document/conversation association bookkeeping."""

import asyncio
import random
from typing import List

import structlog

from ..exceptions import LinkConflict, StoreUnavailable
from .documents import DocumentRepository
from .models import DocumentMemory

logger = structlog.get_logger()


class DocumentLinker:
    """Links documents to the conversations that referenced them.

    The append itself is atomic in the repository; this class only retries
    when the store reports a concurrent writer.
    """

    def __init__(
        self,
        documents: DocumentRepository,
        max_attempts: int = 5,
        base_delay: float = 0.05,
    ) -> None:
        self._documents = documents
        self._max_attempts = max_attempts
        self._base_delay = base_delay

    async def link(self, document_id: str, conversation_id: str, user_id: str) -> bool:
        """Idempotently associate a document with a conversation.

        Returns:
            True if the document exists for the user and was linked (or was
            already linked), False if it is unknown.

        Raises:
            StoreUnavailable: If the store stays unreachable.
        """
        for attempt in range(self._max_attempts):
            try:
                found = await self._documents.append_conversation(
                    document_id, conversation_id, user_id
                )
            except LinkConflict:
                if attempt == self._max_attempts - 1:
                    break
                delay = self._base_delay * (2**attempt) + random.uniform(0, self._base_delay)
                logger.debug(
                    "Link conflict, retrying",
                    document_id=document_id,
                    conversation_id=conversation_id,
                    attempt=attempt + 1,
                )
                await asyncio.sleep(delay)
                continue

            if not found:
                logger.warning(
                    "Cannot link unknown document",
                    document_id=document_id,
                    user_id=user_id,
                )
            return found

        raise StoreUnavailable(
            f"Link of {document_id} to {conversation_id} kept conflicting "
            f"after {self._max_attempts} attempts"
        )

    async def link_all(
        self, document_ids: List[str], conversation_id: str, user_id: str
    ) -> List[str]:
        """Link every document; returns the ids that were linked."""
        linked: List[str] = []
        for document_id in dict.fromkeys(document_ids):
            try:
                if await self.link(document_id, conversation_id, user_id):
                    linked.append(document_id)
            except StoreUnavailable as exc:
                logger.warning(
                    "Document link failed",
                    document_id=document_id,
                    conversation_id=conversation_id,
                    error=str(exc),
                )
        return linked

    async def documents_for(self, conversation_id: str, user_id: str) -> List[DocumentMemory]:
        """Documents a conversation has referenced."""
        return await self._documents.list_for_conversation(user_id, conversation_id)
