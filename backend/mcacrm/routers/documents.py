"""Document upload, download and management routes."""
from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import RedirectResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from pydantic import BaseModel
import logging

from mcacrm.database import get_db
from mcacrm.services.document_service import DocumentService
from mcacrm.services.normalization import normalization_service
from mcacrm.services.storage import storage

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/documents", tags=["Documents"])

# ============================================================================
# SCHEMAS
# ============================================================================

class RenameRequest(BaseModel):
    filename: str

# ============================================================================
# ROUTES
# ============================================================================

@router.post("/upload")
async def upload_document(
    conversation_id: str = Form(...),
    file: UploadFile = File(...),
    document_type: Optional[str] = Form(None),
    notes: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
):
    data = await file.read()
    document = await DocumentService(db).upload_document(
        conversation_id,
        file.filename or "upload",
        data,
        content_type=file.content_type,
        document_type=document_type,
        notes=notes,
    )
    return {"success": True, "document": document}


@router.get("/health/s3")
async def s3_health():
    return await storage.check_bucket()


@router.get("/download/{document_id}")
async def download_document(document_id: str, db: AsyncSession = Depends(get_db)):
    """Proxy the stored bytes with an attachment disposition."""
    document, data = await DocumentService(db).read_document(document_id)
    filename = normalization_service.header_filename(document.original_filename)
    return Response(
        content=data,
        media_type=document.mime_type or "application/octet-stream",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(data)),
        },
    )


@router.get("/view/{document_id}")
async def view_document(document_id: str, db: AsyncSession = Depends(get_db)):
    url = await DocumentService(db).view_url(document_id)
    return RedirectResponse(url)


@router.get("/s3-url/{document_id}")
async def document_url(document_id: str, db: AsyncSession = Depends(get_db)):
    url = await DocumentService(db).view_url(document_id)
    return {"success": True, "url": url}


@router.get("/verify-pdf/{document_id}")
async def verify_pdf(document_id: str, db: AsyncSession = Depends(get_db)):
    """Check that what S3 holds for a document is an actual PDF."""
    report = await DocumentService(db).verify_pdf(document_id)
    return {"success": True, **report}


@router.put("/{document_id}")
async def rename_document(document_id: str, request: RenameRequest, db: AsyncSession = Depends(get_db)):
    document = await DocumentService(db).rename_document(document_id, request.filename)
    return {"success": True, "document": document}


@router.delete("/{document_id}")
async def delete_document(document_id: str, db: AsyncSession = Depends(get_db)):
    result = await DocumentService(db).delete_document(document_id)
    return {"success": True, **result}


@router.get("/{conversation_id}")
async def list_documents(conversation_id: str, db: AsyncSession = Depends(get_db)):
    documents = await DocumentService(db).list_documents(conversation_id)
    return {"success": True, "documents": documents}
