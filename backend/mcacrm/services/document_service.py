"""Document metadata on top of S3 storage."""

import logging
import mimetypes
import os
import secrets
import time
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.config import settings
from mcacrm.exceptions import ExternalServiceError, NotFound, ValidationFailed
from mcacrm.models import Document
from mcacrm.services.lead_service import LeadService
from mcacrm.services.normalization import normalization_service
from mcacrm.services.ocr_service import count_pdf_pages
from mcacrm.services.storage import S3Storage, storage as default_storage
from mcacrm.websocket import emit_to_conversation

logger = logging.getLogger(__name__)


def build_object_key(original_filename: str) -> str:
    """documents/<epoch ms>-<random>-<sanitized name>"""
    stamp = int(time.time() * 1000)
    return f"documents/{stamp}-{secrets.randbelow(10**9)}-{normalization_service.sanitize_filename(original_filename)}"


def guess_mime_type(filename: str, declared: Optional[str] = None) -> str:
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


class DocumentService:
    """Upload, list, rename and delete conversation documents."""

    def __init__(self, db: AsyncSession, store: Optional[S3Storage] = None):
        self.db = db
        self.store = store or default_storage
        self.leads = LeadService(db)

    async def get_document(self, document_id) -> Document:
        try:
            doc_uuid = uuid.UUID(str(document_id))
        except ValueError:
            raise ValidationFailed(f"Invalid document id: {document_id}", fields=["id"])
        document = await self.db.get(Document, doc_uuid)
        if document is None:
            raise NotFound("Document not found", document_id=str(document_id))
        return document

    async def list_documents(self, conversation_ref) -> List[Dict[str, Any]]:
        conversation = await self.leads.get_conversation(conversation_ref)
        result = await self.db.execute(
            select(Document)
            .where(Document.conversation_id == conversation.id)
            .order_by(Document.created_at.desc())
        )
        return [d.to_dict() for d in result.scalars().all()]

    async def upload_document(
        self,
        conversation_ref,
        original_filename: str,
        data: bytes,
        content_type: Optional[str] = None,
        document_type: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not data:
            raise ValidationFailed("No file uploaded", fields=["file"])
        if len(data) > settings.MAX_UPLOAD_BYTES:
            raise ValidationFailed(
                f"File exceeds {settings.MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit",
                fields=["file"],
            )

        conversation = await self.leads.get_conversation(conversation_ref)
        key = build_object_key(original_filename)
        mime_type = guess_mime_type(original_filename, content_type)
        extension = os.path.splitext(original_filename)[1].lstrip(".").lower() or None

        url = await self.store.upload_bytes(
            key, data, mime_type,
            metadata={"conversation_id": str(conversation.id)},
        )

        document = Document(
            conversation_id=conversation.id,
            filename=os.path.basename(key),
            original_filename=original_filename,
            file_size=len(data),
            mime_type=mime_type,
            file_extension=extension,
            document_type=document_type or "Other",
            notes=notes,
            s3_bucket=self.store.bucket,
            s3_key=key,
            s3_url=url,
        )
        self.db.add(document)
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.error(f"Document row insert failed, removing orphaned object {key}")
            try:
                await self.store.delete_object(key)
            except ExternalServiceError as cleanup_error:
                logger.error(f"Orphaned object {key} could not be removed: {cleanup_error}")
            raise
        await self.db.refresh(document)

        payload = document.to_dict()
        logger.info(f"Uploaded {original_filename} for conversation {conversation.id}")
        await emit_to_conversation("document_uploaded", conversation.id, {
            "conversation_id": str(conversation.id),
            "document": payload,
        })
        return payload

    async def rename_document(self, document_id, new_name: str) -> Dict[str, Any]:
        """Rename the display name, keeping the original extension."""
        if not new_name or not new_name.strip():
            raise ValidationFailed("New filename is required", fields=["filename"])
        document = await self.get_document(document_id)

        name = new_name.strip()
        ext = os.path.splitext(document.original_filename)[1]
        if ext and not name.lower().endswith(ext.lower()):
            name = f"{name}{ext}"

        document.original_filename = name
        await self.db.commit()
        await self.db.refresh(document)
        return document.to_dict()

    async def delete_document(self, document_id) -> Dict[str, Any]:
        """Delete the row; object removal is best effort."""
        document = await self.get_document(document_id)
        conversation_id = document.conversation_id

        if document.s3_key:
            try:
                await self.store.delete_object(document.s3_key, bucket=document.s3_bucket)
            except ExternalServiceError as e:
                logger.warning(f"S3 delete failed for {document.s3_key}, removing row anyway: {e}")

        await self.db.execute(delete(Document).where(Document.id == document.id))
        await self.db.commit()

        await emit_to_conversation("document_deleted", conversation_id, {
            "conversation_id": str(conversation_id),
            "document_id": str(document.id),
        })
        return {"id": str(document.id), "deleted": True}

    async def read_document(self, document_id):
        """Returns (document, bytes) for streaming downloads."""
        document = await self.get_document(document_id)
        if not document.s3_key:
            raise NotFound("Document has no stored file", document_id=str(document_id))
        data = await self.store.download_bytes(document.s3_key, bucket=document.s3_bucket)
        return document, data

    async def view_url(self, document_id) -> str:
        document = await self.get_document(document_id)
        if not document.s3_key:
            raise NotFound("Document has no stored file", document_id=str(document_id))
        return await self.store.presigned_url(
            document.s3_key,
            bucket=document.s3_bucket,
            filename=normalization_service.header_filename(document.original_filename),
        )

    async def verify_pdf(self, document_id) -> Dict[str, Any]:
        """Read the stored bytes back and report whether they look like a PDF."""
        document, data = await self.read_document(document_id)
        header = data[:4].decode("latin-1")
        is_valid_pdf = header == "%PDF"
        report = {
            "filename": document.original_filename,
            "s3_key": document.s3_key,
            "size": len(data),
            "isValidPDF": is_valid_pdf,
            "header": header,
            "firstBytes": list(data[:10]),
            "pageCount": count_pdf_pages(data) if is_valid_pdf else 0,
        }
        if not is_valid_pdf:
            logger.warning(f"Stored file {document.s3_key} does not start with a PDF header")
        return report
