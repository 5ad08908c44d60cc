"""
Market Intel - Support Tickets Router

Owners see and edit their own tickets; admins see all tickets, manage
status/priority/assignment and may post internal notes that owners never see.

Endpoints:
- POST /api/support/tickets                  - Open a ticket
- GET  /api/support/tickets                  - List (own; admins may pass all=true)
- GET  /api/support/tickets/{id}             - Ticket with messages
- PUT  /api/support/tickets/{id}             - Update
- POST /api/support/tickets/{id}/messages    - Reply
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db, SupportTicket, SupportTicketMessage, User, dump_json, load_json
from dependencies import get_current_user, is_admin, log_activity
from input_sanitizer import sanitize_text
from schemas.support import TicketCreate, TicketUpdate, TicketMessageCreate, TicketStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/support/tickets", tags=["Support"])

# Fields a ticket owner may change; everything else is staff-only
OWNER_FIELDS = {"title", "description", "category", "tags"}
# Columns that always hold a value; an explicit null is rejected
REQUIRED_FIELDS = ("title", "description", "status", "priority", "category")


def _message_dict(m: SupportTicketMessage) -> dict:
    return {
        "id": m.id,
        "user_id": m.user_id,
        "message": m.message,
        "is_internal": m.is_internal,
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


def _ticket_dict(t: SupportTicket, include_messages: bool = False, show_internal: bool = False) -> dict:
    payload = {
        "id": t.id,
        "user_id": t.user_id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "category": t.category,
        "tags": load_json(t.tags, []),
        "assigned_to": t.assigned_to,
        "resolution": t.resolution,
        "resolved_at": t.resolved_at.isoformat() if t.resolved_at else None,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }
    if include_messages:
        payload["messages"] = [
            _message_dict(m) for m in t.messages if show_internal or not m.is_internal
        ]
    return payload


def _get_visible(db: Session, ticket_id: int, current_user: dict) -> SupportTicket:
    query = db.query(SupportTicket).filter(SupportTicket.id == ticket_id)
    if not is_admin(current_user):
        query = query.filter(SupportTicket.user_id == current_user["id"])
    ticket = query.first()
    if not ticket:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return ticket


def _clean(text: str) -> str:
    try:
        return sanitize_text(text)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("", status_code=201)
async def create_ticket(
    body: TicketCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    ticket = SupportTicket(
        user_id=current_user["id"],
        title=_clean(body.title),
        description=_clean(body.description),
        priority=body.priority,
        category=body.category,
        tags=dump_json(body.tags),
        status="open",
    )
    db.add(ticket)
    db.commit()
    db.refresh(ticket)

    log_activity(
        db, current_user["email"], current_user["id"], "support_ticket_created",
        resource_type="support_ticket", resource_id=ticket.id,
    )
    return _ticket_dict(ticket)


@router.get("")
async def list_tickets(
    status: Optional[TicketStatus] = Query(None),
    include_all: bool = Query(False, alias="all", description="Admins only: include every user's tickets"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    query = db.query(SupportTicket)
    if not (include_all and is_admin(current_user)):
        query = query.filter(SupportTicket.user_id == current_user["id"])
    if status:
        query = query.filter(SupportTicket.status == status)
    rows = query.order_by(SupportTicket.created_at.desc()).limit(limit).all()
    return {"tickets": [_ticket_dict(t) for t in rows], "total": len(rows)}


@router.get("/{ticket_id}")
async def get_ticket(
    ticket_id: int,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    ticket = _get_visible(db, ticket_id, current_user)
    return _ticket_dict(ticket, include_messages=True, show_internal=is_admin(current_user))


@router.put("/{ticket_id}")
async def update_ticket(
    ticket_id: int,
    body: TicketUpdate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Owners may edit content and close; staff may change anything."""
    ticket = _get_visible(db, ticket_id, current_user)
    changes = body.model_dump(exclude_unset=True)
    nulled = [f for f in REQUIRED_FIELDS if f in changes and changes[f] is None]
    if nulled:
        raise HTTPException(status_code=400, detail=f"Fields cannot be null: {', '.join(nulled)}")
    admin = is_admin(current_user)

    if not admin:
        forbidden = set(changes) - OWNER_FIELDS - {"status"}
        if forbidden or changes.get("status") not in (None, "closed"):
            raise HTTPException(status_code=403, detail="Insufficient permissions")

    if "assigned_to" in changes and changes["assigned_to"] is not None:
        if not db.query(User.id).filter(User.id == changes["assigned_to"]).first():
            raise HTTPException(status_code=404, detail="Assignee not found")

    for field in ("title", "description"):
        if field in changes:
            setattr(ticket, field, _clean(changes[field]))
    for field in ("status", "priority", "category", "assigned_to", "resolution"):
        if field in changes:
            setattr(ticket, field, changes[field])
    if "tags" in changes:
        ticket.tags = dump_json(changes["tags"] or [])

    if changes.get("status") == "resolved" and ticket.resolved_at is None:
        ticket.resolved_at = datetime.utcnow()
    elif changes.get("status") in ("open", "in_progress", "waiting"):
        ticket.resolved_at = None

    db.commit()
    db.refresh(ticket)

    if "status" in changes:
        log_activity(
            db, current_user["email"], current_user["id"], "support_ticket_status",
            action_details={"status": ticket.status},
            resource_type="support_ticket", resource_id=ticket.id,
        )
    return _ticket_dict(ticket)


@router.post("/{ticket_id}/messages", status_code=201)
async def add_message(
    ticket_id: int,
    body: TicketMessageCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    ticket = _get_visible(db, ticket_id, current_user)
    if body.is_internal and not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Only staff can post internal notes")

    message = SupportTicketMessage(
        ticket_id=ticket.id,
        user_id=current_user["id"],
        message=_clean(body.message),
        is_internal=body.is_internal,
    )
    db.add(message)
    # An owner reply re-opens a ticket waiting on them
    if ticket.user_id == current_user["id"] and ticket.status == "waiting":
        ticket.status = "open"
    ticket.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(message)
    return _message_dict(message)
