"""
Market Intel - Provider API Keys Router

Keys are validated against the provider before they are stored, encrypted
with the key vault, and only ever returned masked.

Endpoints:
- GET    /api/api-keys                 - Status of every supported provider
- GET    /api/api-keys/requirements    - Which of the given providers lack keys
- GET    /api/api-keys/{provider}      - Status of one provider
- POST   /api/api-keys                 - Validate and save a key
- POST   /api/api-keys/validate        - Validate a given or stored key
- POST   /api/api-keys/refresh         - Revalidate every stored key
- DELETE /api/api-keys/{provider}      - Remove a key
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from api_key_validation import validate_api_key, is_supported
from constants import SUPPORTED_PROVIDERS, ANALYSIS_PROVIDERS
from database import get_db, ApiKey
from dependencies import get_current_user, log_activity, client_ip
from key_vault import KeyVaultError, encrypt_key, decrypt_key, mask_key
from schemas.api_keys import ApiKeySave, ApiKeyValidateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/api-keys", tags=["API Keys"])


def _normalize_provider(provider: str) -> str:
    provider = (provider or "").lower().strip()
    if provider not in SUPPORTED_PROVIDERS or not is_supported(provider):
        raise HTTPException(status_code=400, detail=f"Unsupported provider: {provider}")
    return provider


def _get_key_row(db: Session, user_id: int, provider: str) -> Optional[ApiKey]:
    return db.query(ApiKey).filter(ApiKey.user_id == user_id, ApiKey.provider == provider).first()


def _status_entry(provider: str, row: Optional[ApiKey]) -> dict:
    if row is None or not row.is_active:
        status = "unconfigured"
    elif row.status == "active":
        status = "operational"
    else:
        status = "error"
    return {
        "provider": provider,
        "status": status,
        "is_working": status == "operational",
        "last_checked": row.last_validated.isoformat() if row and row.last_validated else None,
        "error_message": row.error_message if row else None,
        "exists": row is not None,
        "is_active": bool(row and row.is_active),
        "is_configured": status != "unconfigured",
        "masked_key": row.masked_key if row else None,
    }


def _apply_validation(row: ApiKey, result: dict):
    row.status = "active" if result["is_valid"] else "error"
    row.error_message = result.get("error")
    row.last_validated = datetime.utcnow()


@router.get("")
async def list_api_keys(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Status for every supported provider, configured or not."""
    rows = {r.provider: r for r in db.query(ApiKey).filter(ApiKey.user_id == current_user["id"]).all()}
    statuses = {p: _status_entry(p, rows.get(p)) for p in SUPPORTED_PROVIDERS}
    return {
        "providers": statuses,
        "configured_count": sum(1 for s in statuses.values() if s["is_configured"]),
    }


@router.get("/requirements")
async def check_requirements(
    providers: str = Query(",".join(ANALYSIS_PROVIDERS), description="Comma separated provider names"),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Whether the caller has working keys for the given providers."""
    wanted = [p.strip().lower() for p in providers.split(",") if p.strip()]
    rows = db.query(ApiKey).filter(
        ApiKey.user_id == current_user["id"],
        ApiKey.is_active == True,  # noqa: E712
        ApiKey.status == "active",
    ).all()
    available = sorted(r.provider for r in rows)
    missing = [p for p in wanted if p not in available]
    return {
        "has_required_keys": not missing,
        "missing_keys": missing,
        "available_providers": available,
    }


@router.get("/{provider}")
async def get_api_key_status(
    provider: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    provider = _normalize_provider(provider)
    return _status_entry(provider, _get_key_row(db, current_user["id"], provider))


@router.post("", status_code=201)
async def save_api_key(
    body: ApiKeySave,
    request: Request,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Validate the key with its provider, then store it encrypted."""
    provider = _normalize_provider(body.provider)
    api_key = body.api_key.strip()

    result = await validate_api_key(provider, api_key)
    if not result["is_valid"]:
        logger.info(f"Rejected {provider} key for user {current_user['id']}: {result['error']}")
        raise HTTPException(status_code=400, detail=result["error"] or "API key validation failed")

    row = _get_key_row(db, current_user["id"], provider)
    if row is None:
        row = ApiKey(user_id=current_user["id"], provider=provider)
        db.add(row)
    row.encrypted_key = encrypt_key(api_key)
    row.masked_key = mask_key(api_key)
    row.is_active = True
    _apply_validation(row, result)
    db.commit()
    db.refresh(row)

    log_activity(
        db, current_user["email"], current_user["id"], "api_key_saved",
        action_details={"provider": provider, "masked_key": row.masked_key},
        resource_type="api_key", resource_id=row.id,
        ip_address=client_ip(request),
    )
    return {
        "success": True,
        "provider": provider,
        "masked_key": row.masked_key,
        "status": row.status,
        "validation": result["details"],
    }


@router.post("/validate")
async def validate_key(
    body: ApiKeyValidateRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Validate a key without saving it. With no key given, the stored key is checked."""
    provider = _normalize_provider(body.provider)

    if body.api_key:
        return await validate_api_key(provider, body.api_key)

    row = _get_key_row(db, current_user["id"], provider)
    if row is None:
        raise HTTPException(status_code=404, detail=f"No stored key for {provider}")
    try:
        api_key = decrypt_key(row.encrypted_key)
    except KeyVaultError as e:
        raise HTTPException(status_code=409, detail=str(e))

    result = await validate_api_key(provider, api_key)
    _apply_validation(row, result)
    db.commit()
    return result


@router.post("/refresh")
async def refresh_api_keys(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Revalidate every stored key and update its status."""
    rows = db.query(ApiKey).filter(
        ApiKey.user_id == current_user["id"],
        ApiKey.is_active == True,  # noqa: E712
    ).all()

    results = []
    for row in rows:
        try:
            api_key = decrypt_key(row.encrypted_key)
        except KeyVaultError as e:
            result = {"is_valid": False, "provider": row.provider, "error": str(e), "details": {}}
        else:
            result = await validate_api_key(row.provider, api_key)
        _apply_validation(row, result)
        results.append(result)
    db.commit()

    return {
        "checked": len(results),
        "valid": sum(1 for r in results if r["is_valid"]),
        "results": results,
    }


@router.delete("/{provider}")
async def delete_api_key(
    provider: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    provider = _normalize_provider(provider)
    row = _get_key_row(db, current_user["id"], provider)
    if row is None:
        raise HTTPException(status_code=404, detail=f"No stored key for {provider}")

    db.delete(row)
    db.commit()
    log_activity(
        db, current_user["email"], current_user["id"], "api_key_deleted",
        action_details={"provider": provider}, resource_type="api_key",
    )
    return {"success": True, "provider": provider}
