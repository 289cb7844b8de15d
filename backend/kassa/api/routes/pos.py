"""POS admin routes.

Catalog, checkout, payment actions, transactions, fiscal health, audit
verification, reports, the DSFinV-K export, settings and stored documents. All endpoints require an admin
token; Verifone webhooks live in ``webhooks.py``.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import Response
from sqlalchemy import select

from kassa.core.errors import PosNotFoundError, PosValidationError
from kassa.core.rate_limit import limiter
from kassa.core.security import CurrentAdmin
from kassa.db.session import DbSession
from kassa.models.pos import PosItem, PosLocation, PosTerminal
from kassa.schemas.pos import (
    CheckoutStartRequest,
    ItemCreate,
    ItemResponse,
    LocationCreate,
    LocationResponse,
    MarkPaidRequest,
    PosSettingsUpdate,
    RefundRequest,
    SendReceiptRequest,
    StornoRequest,
    TerminalCreate,
    TerminalResponse,
)
from kassa.services.pos.actions import mark_paid, refund_transaction, storno_transaction
from kassa.services.pos.audit import list_audit_entries, serialize_audit_entry, verify_audit_chain
from kassa.services.pos.checkout import get_checkout_status, start_checkout
from kassa.services.pos.contracts import get_contract_for_transaction, serialize_contract
from kassa.services.pos.documents import queue_receipt_email
from kassa.services.pos.exports import build_dsfinvk_export, parse_export_range
from kassa.services.pos.pos_settings import get_pos_settings, update_pos_settings
from kassa.services.pos.reports import build_daily_close, build_daily_close_pdf, parse_report_date
from kassa.services.pos.storage import get_document_storage
from kassa.services.pos.transactions import get_transaction, list_transactions, serialize_transaction
from kassa.services.pos.tse import get_tse_health

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# Catalog
# ============================================================================

@router.get("/locations", response_model=list[LocationResponse])
@limiter.limit("60/minute")
async def list_locations(request: Request, db: DbSession, admin: CurrentAdmin):
    return db.execute(select(PosLocation).order_by(PosLocation.name)).scalars().all()


@router.post("/locations", response_model=LocationResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_location(request: Request, data: LocationCreate, db: DbSession, admin: CurrentAdmin):
    location = PosLocation(name=data.name, address=data.address)
    db.add(location)
    db.commit()
    db.refresh(location)
    return location


@router.get("/terminals", response_model=list[TerminalResponse])
@limiter.limit("60/minute")
async def list_terminals(
    request: Request,
    db: DbSession,
    admin: CurrentAdmin,
    location_id: Optional[int] = Query(None, alias="locationId"),
):
    query = select(PosTerminal).order_by(PosTerminal.id)
    if location_id is not None:
        query = query.where(PosTerminal.location_id == location_id)
    return db.execute(query).scalars().all()


@router.post("/terminals", response_model=TerminalResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_terminal(request: Request, data: TerminalCreate, db: DbSession, admin: CurrentAdmin):
    """Register a card terminal at a location."""
    if db.get(PosLocation, data.location_id) is None:
        raise PosNotFoundError("location_not_found")
    terminal = PosTerminal(
        location_id=data.location_id,
        label=data.label,
        terminal_ref=data.terminal_ref or data.label,
        provider=data.provider,
        mode=data.mode,
        host=data.host,
        port=data.port,
        zvt_password=data.zvt_password,
        agent_id=data.agent_id,
    )
    db.add(terminal)
    db.commit()
    db.refresh(terminal)
    return terminal


@router.get("/items", response_model=list[ItemResponse])
@limiter.limit("60/minute")
async def list_items(
    request: Request,
    db: DbSession,
    admin: CurrentAdmin,
    active_only: bool = Query(True, alias="activeOnly"),
):
    query = select(PosItem).order_by(PosItem.title)
    if active_only:
        query = query.where(PosItem.is_active.is_(True))
    return db.execute(query).scalars().all()


@router.post("/items", response_model=ItemResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_item(request: Request, data: ItemCreate, db: DbSession, admin: CurrentAdmin):
    item = PosItem(
        type=data.type,
        title=data.title,
        sku=data.sku,
        price_gross_cents=data.price_gross_cents,
        vat_rate=data.vat_rate,
        artist_name=data.artist_name,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


# ============================================================================
# Checkout
# ============================================================================

@router.post("/checkout/start")
@limiter.limit("30/minute")
async def checkout_start(request: Request, data: CheckoutStartRequest, db: DbSession, admin: CurrentAdmin):
    """
    Start a checkout.

    Validates cart, buyer and contract, creates the transaction, starts the
    fiscal transaction and hands the payment to the terminal provider.
    """
    return await start_checkout(db, data, admin.id)


@router.get("/checkout/status")
@limiter.limit("120/minute")
async def checkout_status(
    request: Request,
    db: DbSession,
    admin: CurrentAdmin,
    tx_id: int = Query(..., alias="txId"),
):
    return await get_checkout_status(db, tx_id, admin.id)


@router.post("/checkout/mark-paid")
@limiter.limit("30/minute")
async def checkout_mark_paid(request: Request, data: MarkPaidRequest, db: DbSession, admin: CurrentAdmin):
    """Record a cash or standalone-terminal payment."""
    ref = data.external_ref
    return await mark_paid(
        db,
        data.tx_id,
        admin.id,
        method=data.method,
        slip_no=data.slip_no or (ref.terminal_slip_no if ref else None),
        rrn=data.rrn or (ref.rrn if ref else None),
        note=data.note or (ref.note if ref else None),
    )


# ============================================================================
# Transactions
# ============================================================================

@router.get("/transactions")
@limiter.limit("60/minute")
async def get_transactions(
    request: Request,
    db: DbSession,
    admin: CurrentAdmin,
    status_filter: Optional[str] = Query(None, alias="status"),
    location_id: Optional[int] = Query(None, alias="locationId"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    items, total = list_transactions(db, status=status_filter, location_id=location_id, skip=skip, limit=limit)
    return {"ok": True, "items": [serialize_transaction(tx) for tx in items], "total": total}


@router.get("/transactions/{tx_id}")
@limiter.limit("60/minute")
async def get_transaction_detail(request: Request, tx_id: int, db: DbSession, admin: CurrentAdmin):
    tx = get_transaction(db, tx_id)
    return {
        "ok": True,
        "transaction": serialize_transaction(tx),
        "contract": serialize_contract(get_contract_for_transaction(db, tx_id)),
        "auditEntries": [serialize_audit_entry(e) for e in list_audit_entries(db, tx_id=tx_id)],
    }


@router.post("/transactions/{tx_id}/refund")
@limiter.limit("10/minute")
async def refund(request: Request, tx_id: int, data: RefundRequest, db: DbSession, admin: CurrentAdmin):
    return await refund_transaction(db, tx_id, admin.id, data.reason, data.amount_cents)


@router.post("/transactions/{tx_id}/storno")
@limiter.limit("10/minute")
async def storno(request: Request, tx_id: int, data: StornoRequest, db: DbSession, admin: CurrentAdmin):
    return await storno_transaction(db, tx_id, admin.id, data.reason)


@router.post("/transactions/{tx_id}/send-receipt")
@limiter.limit("10/minute")
async def send_receipt(
    request: Request,
    tx_id: int,
    db: DbSession,
    admin: CurrentAdmin,
    data: Optional[SendReceiptRequest] = None,
):
    return queue_receipt_email(db, tx_id, admin.id, data.email if data else None)


# ============================================================================
# Fiscal, audit, reports, exports
# ============================================================================

@router.get("/tse/health")
@limiter.limit("30/minute")
async def tse_health(request: Request, admin: CurrentAdmin):
    return await get_tse_health()


@router.get("/audit/verify")
@limiter.limit("10/minute")
async def audit_verify(request: Request, db: DbSession, admin: CurrentAdmin):
    """Recompute every hash of the audit chain."""
    return verify_audit_chain(db).as_dict()


@router.get("/reports/daily-close")
@limiter.limit("30/minute")
async def daily_close(
    request: Request,
    db: DbSession,
    admin: CurrentAdmin,
    report_date: Optional[str] = Query(None, alias="date"),
    report_format: str = Query("json", alias="format"),
):
    report = build_daily_close(db, parse_report_date(report_date))
    if report_format.lower() != "pdf":
        return report
    return Response(
        content=build_daily_close_pdf(report),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="daily-close-{report["date"]}.pdf"',
            "Cache-Control": "no-store",
        },
    )


@router.get("/exports/dsfinvk")
@limiter.limit("10/minute")
async def dsfinvk_export(
    request: Request,
    db: DbSession,
    admin: CurrentAdmin,
    from_date: Optional[str] = Query(None, alias="from"),
    to_date: Optional[str] = Query(None, alias="to"),
):
    filename, archive = build_dsfinvk_export(db, *parse_export_range(from_date, to_date))
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"', "Cache-Control": "no-store"},
    )


# ============================================================================
# Settings and documents
# ============================================================================

@router.get("/settings")
@limiter.limit("60/minute")
async def get_settings(request: Request, db: DbSession, admin: CurrentAdmin):
    return {"ok": True, "settings": get_pos_settings(db)}


@router.put("/settings")
@limiter.limit("10/minute")
async def put_settings(request: Request, data: PosSettingsUpdate, db: DbSession, admin: CurrentAdmin):
    return {"ok": True, "settings": update_pos_settings(db, admin.id, data.changes())}


@router.get("/documents/{key:path}")
@limiter.limit("60/minute")
async def get_document(request: Request, key: str, admin: CurrentAdmin):
    """Serve a stored receipt, invoice, contract or signature."""
    if not key.startswith("pos/"):
        raise PosValidationError("invalid_document_key")
    data = get_document_storage().get(key)
    if data is None:
        raise PosNotFoundError("document_not_found")
    media_type = "application/pdf"
    if key.endswith(".png"):
        media_type = "image/png"
    elif key.endswith(".jpg"):
        media_type = "image/jpeg"
    return Response(content=data, media_type=media_type, headers={"Cache-Control": "private, no-store"})
