"""
Market Intel - Documents Router

Files are written under DOCUMENTS_DIR/<user_id>/ and described by a
`documents` row. Every endpoint is scoped to the owner.

Endpoints:
- POST   /api/documents                 - Upload (multipart)
- GET    /api/documents                 - List / search
- GET    /api/documents/{id}            - Metadata
- GET    /api/documents/{id}/download   - File contents
- PUT    /api/documents/{id}            - Update metadata
- DELETE /api/documents/{id}            - Delete row and file
"""

import logging
import os
import secrets
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import or_
from sqlalchemy.orm import Session

from database import get_db, CompetitorAnalysis, Document, dump_json, load_json
from dependencies import get_current_user, log_activity
from schemas.documents import DocumentUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/documents", tags=["Documents"])

UPLOAD_CHUNK_BYTES = 1024 * 1024


def documents_dir() -> Path:
    return Path(os.getenv("DOCUMENTS_DIR", "./documents"))


def max_upload_bytes() -> int:
    return int(float(os.getenv("MAX_UPLOAD_MB", "10")) * 1024 * 1024)


def _serialize(doc: Document) -> dict:
    return {
        "id": doc.id,
        "name": doc.name,
        "description": doc.description,
        "file_type": doc.file_type,
        "file_size": doc.file_size,
        "category": doc.category,
        "tags": load_json(doc.tags, []),
        "metadata": load_json(doc.doc_metadata, {}),
        "analysis_id": doc.analysis_id,
        "created_at": doc.created_at.isoformat() if doc.created_at else None,
        "updated_at": doc.updated_at.isoformat() if doc.updated_at else None,
    }


def _get_owned(db: Session, document_id: int, user_id: int) -> Document:
    doc = db.query(Document).filter(Document.id == document_id, Document.user_id == user_id).first()
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")
    return doc


def _check_analysis(db: Session, analysis_id: Optional[int], user_id: int):
    if analysis_id is None:
        return
    owned = db.query(CompetitorAnalysis.id).filter(
        CompetitorAnalysis.id == analysis_id, CompetitorAnalysis.user_id == user_id
    ).first()
    if not owned:
        raise HTTPException(status_code=404, detail="Analysis not found")


def _split_tags(raw: Optional[str]) -> list:
    return [t.strip() for t in (raw or "").split(",") if t.strip()]


async def _read_limited(file: UploadFile, limit: int) -> bytes:
    """Read the upload in chunks, stopping as soon as it passes the limit."""
    chunks = []
    size = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            raise HTTPException(status_code=413, detail=f"File too large (max {limit} bytes)")
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("", status_code=201)
async def upload_document(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    analysis_id: Optional[int] = Form(None),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Store an uploaded file and its metadata."""
    content = await _read_limited(file, max_upload_bytes())
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")

    _check_analysis(db, analysis_id, current_user["id"])

    original = file.filename or "upload"
    ext = Path(original).suffix.lower()
    user_dir = documents_dir() / str(current_user["id"])
    user_dir.mkdir(parents=True, exist_ok=True)
    stored = user_dir / f"{datetime.utcnow().strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(8)}{ext}"
    stored.write_bytes(content)

    doc = Document(
        user_id=current_user["id"],
        analysis_id=analysis_id,
        name=(title or original).strip(),
        description=description,
        file_path=str(stored),
        file_type=file.content_type or ext.lstrip(".") or None,
        file_size=len(content),
        category=category,
        tags=dump_json(_split_tags(tags)),
        doc_metadata=dump_json({"original_filename": original}),
    )
    db.add(doc)
    db.commit()
    db.refresh(doc)

    log_activity(
        db, current_user["email"], current_user["id"], "document_uploaded",
        action_details={"name": doc.name, "size": doc.file_size},
        resource_type="document", resource_id=doc.id,
    )
    logger.info(f"Stored document {doc.id} ({doc.file_size} bytes) for user {current_user['id']}")
    return _serialize(doc)


@router.get("")
async def list_documents(
    query: Optional[str] = Query(None, description="Substring of name or description"),
    category: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    q = db.query(Document).filter(Document.user_id == current_user["id"])
    if query:
        like = f"%{query}%"
        q = q.filter(or_(Document.name.ilike(like), Document.description.ilike(like)))
    if category:
        q = q.filter(Document.category == category)
    rows = q.order_by(Document.created_at.desc()).all()

    # Tags are a JSON array in a Text column, so the tag filter runs in Python
    if tag:
        rows = [d for d in rows if tag in load_json(d.tags, [])]

    return {
        "documents": [_serialize(d) for d in rows[offset:offset + limit]],
        "total": len(rows),
        "limit": limit,
        "offset": offset,
    }


@router.get("/{document_id}")
async def get_document(
    document_id: int,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    return _serialize(_get_owned(db, document_id, current_user["id"]))


@router.get("/{document_id}/download")
async def download_document(
    document_id: int,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    doc = _get_owned(db, document_id, current_user["id"])
    if not os.path.exists(doc.file_path):
        logger.error(f"Document {doc.id} file missing: {doc.file_path}")
        raise HTTPException(status_code=404, detail="Document file missing")

    original = load_json(doc.doc_metadata, {}).get("original_filename") or doc.name
    return FileResponse(doc.file_path, filename=original, media_type=doc.file_type or None)


@router.put("/{document_id}")
async def update_document(
    document_id: int,
    body: DocumentUpdate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    doc = _get_owned(db, document_id, current_user["id"])
    changes = body.model_dump(exclude_unset=True)

    if "analysis_id" in changes:
        _check_analysis(db, changes["analysis_id"], current_user["id"])
        doc.analysis_id = changes["analysis_id"]
    for field in ("name", "description", "category"):
        if field in changes:
            setattr(doc, field, changes[field])
    if "tags" in changes:
        doc.tags = dump_json(changes["tags"] or [])
    if "metadata" in changes:
        merged = load_json(doc.doc_metadata, {})
        merged.update(changes["metadata"] or {})
        doc.doc_metadata = dump_json(merged)

    db.commit()
    db.refresh(doc)
    return _serialize(doc)


@router.delete("/{document_id}")
async def delete_document(
    document_id: int,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    doc = _get_owned(db, document_id, current_user["id"])
    path = doc.file_path
    db.delete(doc)
    db.commit()

    try:
        os.remove(path)
    except FileNotFoundError:
        logger.warning(f"Document {document_id} file already gone: {path}")

    log_activity(
        db, current_user["email"], current_user["id"], "document_deleted",
        resource_type="document", resource_id=document_id,
    )
    return {"success": True, "message": "Document deleted"}
