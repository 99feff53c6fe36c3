"""CSV import endpoint for bulk lead upload."""
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from mcacrm.database import get_db
from mcacrm.services.csv_import import CsvImportService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/csv-import", tags=["CSV Import"])


@router.post("/upload")
async def upload_csv(
    csvFile: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
):
    """Import leads from a CSV; duplicate phones are skipped."""
    filename = csvFile.filename or "import.csv"
    if not filename.lower().endswith(".csv"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File must be a CSV file"
        )

    content = await csvFile.read()
    return await CsvImportService(db).import_file(filename, content)


@router.get("/history")
async def import_history(
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return {"success": True, **await CsvImportService(db).get_history(limit=limit, offset=offset)}


@router.get("/{import_id}")
async def import_detail(import_id: str, db: AsyncSession = Depends(get_db)):
    return {"success": True, "import": await CsvImportService(db).get_import(import_id)}


@router.get("/{import_id}/conversations")
async def import_conversations(import_id: str, db: AsyncSession = Depends(get_db)):
    conversations = await CsvImportService(db).get_import_conversations(import_id)
    return {"success": True, "conversations": conversations, "total": len(conversations)}
