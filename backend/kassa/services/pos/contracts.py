"""Artwork purchase contracts.

A draft is created at checkout, holding a snapshot of seller, buyer, artworks
and the buyer's signature image. Once the transaction is paid the snapshot is
marked paid, rendered to PDF and the signing is audited.
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from kassa.core.errors import PosValidationError
from kassa.db.base import utcnow
from kassa.models.pos import AuditAction, PosContract, PosTransaction
from kassa.schemas.pos import BuyerInput, ContractInput
from kassa.services.pos.audit import append_audit_log
from kassa.services.pos.documents import format_cents, format_datetime, render_pdf
from kassa.services.pos.payment_status import PAID, as_record
from kassa.services.pos.storage import DocumentStorage, get_document_storage, safe_segment

logger = logging.getLogger(__name__)

TEMPLATE_VERSION = "pos-artwork-contract-v1"
TERMS_LINK = "https://artclub.wtf/policies/terms-of-service"
SELLER = {
    "name": "Artclub Mixed Media GmbH",
    "address": "Friedrichsruher Straße 37, 14193 Berlin",
    "email": "support@artclub.wtf",
    "phone": "+49 176 41534464",
}
UNKNOWN_ARTIST = "Unknown artist"
MAX_SIGNATURE_BYTES = 5 * 1024 * 1024

_SIGNATURE_RE = re.compile(r"^data:(image/(?:png|jpeg|jpg));base64,([a-zA-Z0-9+/=]+)$")


@dataclass
class ArtworkLine:
    """An artwork cart line as snapshotted at checkout."""

    item_id: int
    title: str
    qty: int
    unit_gross_cents: int
    artist_name: Optional[str] = None


@dataclass
class SignatureImage:
    mime: str
    data: bytes
    extension: str


def parse_signature_data_url(data_url: str) -> SignatureImage:
    """Decode a ``data:image/png;base64,...`` signature."""
    match = _SIGNATURE_RE.match((data_url or "").strip())
    if not match:
        raise PosValidationError("contract_signature_invalid")

    mime = "image/jpeg" if match.group(1) == "image/jpg" else match.group(1)
    try:
        data = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError):
        raise PosValidationError("contract_signature_invalid")
    if not data:
        raise PosValidationError("contract_signature_invalid")
    if len(data) > MAX_SIGNATURE_BYTES:
        raise PosValidationError("contract_signature_too_large")

    return SignatureImage(mime=mime, data=data, extension="png" if mime == "image/png" else "jpg")


def validate_contract_input(contract: ContractInput, artwork_lines: List[ArtworkLine]) -> SignatureImage:
    """Check a contract payload against the cart before anything is stored."""
    cart_ids = {line.item_id for line in artwork_lines}
    for artwork in contract.artworks:
        if artwork.item_id not in cart_ids:
            raise PosValidationError("contract_artwork_mismatch")
    return parse_signature_data_url(contract.buyer_signature_data_url)


def build_contract_snapshot(
    tx_id: int,
    buyer: BuyerInput,
    artwork_lines: List[ArtworkLine],
    contract: ContractInput,
    signature_url: str,
    gross_cents: int,
    is_paid: bool = False,
) -> Dict[str, Any]:
    overrides = {a.item_id: a for a in contract.artworks}
    artworks = []
    for line in artwork_lines:
        override = overrides.get(line.item_id)
        artworks.append({
            "itemId": line.item_id,
            "title": (override.title if override and override.title else None) or line.title,
            "artistName": (
                (override.artist_name if override and override.artist_name else None)
                or line.artist_name
                or UNKNOWN_ARTIST
            ),
            "year": override.year if override else None,
            "techniqueSize": override.technique_size if override else None,
            "editionType": (override.edition_type if override and override.edition_type else "unique"),
            "qty": line.qty,
            "unitGrossCents": line.unit_gross_cents,
            "lineGrossCents": line.qty * line.unit_gross_cents,
        })

    return {
        "templateVersion": TEMPLATE_VERSION,
        "txId": tx_id,
        "seller": dict(SELLER),
        "termsLink": TERMS_LINK,
        "artistName": artworks[0]["artistName"] if artworks else UNKNOWN_ARTIST,
        "buyer": {
            "name": buyer.name,
            "company": buyer.company,
            "billingAddress": buyer.billing_address,
            "shippingAddress": buyer.shipping_address,
            "email": buyer.email,
            "phone": buyer.phone,
        },
        "artworks": artworks,
        "purchase": {"grossCents": gross_cents, "status": "paid" if is_paid else "open"},
        "delivery": {
            "method": contract.delivery_method,
            "estimatedDeliveryDate": contract.estimated_delivery_date,
        },
        "signatures": {
            "buyerSignatureImageUrl": signature_url,
            "sellerSignature": SELLER["name"],
            "signedAt": utcnow().isoformat(),
        },
    }


def create_artwork_contract_draft(
    db: Session,
    tx_id: int,
    buyer: BuyerInput,
    artwork_lines: List[ArtworkLine],
    contract: ContractInput,
    gross_cents: int,
    storage: Optional[DocumentStorage] = None,
) -> PosContract:
    """Store the signature image and the contract snapshot for a new transaction."""
    storage = storage or get_document_storage()
    signature = validate_contract_input(contract, artwork_lines)
    now = utcnow()
    signature_key = (
        f"pos/contracts/signatures/{now.year}/tx-{safe_segment(str(tx_id))}-"
        f"{int(now.timestamp() * 1000)}.{signature.extension}"
    )
    signature_url = storage.put(signature_key, signature.data, signature.mime)

    snapshot = build_contract_snapshot(tx_id, buyer, artwork_lines, contract, signature_url, gross_cents)
    draft = db.execute(select(PosContract).where(PosContract.tx_id == tx_id)).scalar_one_or_none()
    if draft is None:
        draft = PosContract(tx_id=tx_id, status="draft", snapshot=snapshot, buyer_signature_key=signature_key)
        db.add(draft)
    else:
        draft.snapshot = snapshot
        draft.buyer_signature_key = signature_key
    db.flush()

    db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx_id)
        .values(contract_id=draft.id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(draft)
    return draft


def build_contract_pdf(snapshot: Dict[str, Any]) -> bytes:
    seller = as_record(snapshot.get("seller"))
    buyer = as_record(snapshot.get("buyer"))
    purchase = as_record(snapshot.get("purchase"))
    delivery = as_record(snapshot.get("delivery"))
    signatures = as_record(snapshot.get("signatures"))

    blocks: List[Any] = [
        "Seller:",
        seller.get("name", ""),
        seller.get("address", ""),
        f"{seller.get('email', '')} | {seller.get('phone', '')}",
        "",
        f"Transaction ID: {snapshot.get('txId')}",
        f"Contract timestamp: {signatures.get('signedAt', '-')}",
        "",
        "Buyer:",
        f"Name: {buyer.get('name') or '-'}",
        f"Company: {buyer.get('company') or '-'}",
        f"Billing address: {buyer.get('billingAddress') or '-'}",
        f"Shipping address: {buyer.get('shippingAddress') or '-'}",
        f"Email: {buyer.get('email') or '-'}",
        f"Phone: {buyer.get('phone') or '-'}",
        "",
    ]
    rows = [["Artist", "Title", "Year", "Technique/Size", "Unique/Edition", "Qty", "Line"]]
    for artwork in snapshot.get("artworks") or []:
        rows.append([
            artwork.get("artistName") or UNKNOWN_ARTIST,
            artwork.get("title") or "-",
            artwork.get("year") or "-",
            artwork.get("techniqueSize") or "-",
            artwork.get("editionType") or "unique",
            artwork.get("qty"),
            format_cents(int(artwork.get("lineGrossCents") or 0)),
        ])
    blocks += [
        rows,
        "",
        f"Total price: {format_cents(int(purchase.get('grossCents') or 0))}",
        f"Payment status: {purchase.get('status', '-')}",
        "",
        f"Delivery method: {delivery.get('method') or '-'}",
        f"Estimated delivery date: {delivery.get('estimatedDeliveryDate') or '-'}",
        "",
        f"Terms: {snapshot.get('termsLink', TERMS_LINK)}",
        "",
        f"Buyer signature image: {signatures.get('buyerSignatureImageUrl') or '-'}",
        f"Seller signature: {signatures.get('sellerSignature') or SELLER['name']}",
    ]
    return render_pdf("Artwork Purchase Contract", blocks)


def ensure_paid_artwork_contract_document(
    db: Session,
    tx_id: int,
    actor_id: int,
    storage: Optional[DocumentStorage] = None,
) -> None:
    """Finalize the contract of a paid transaction: mark paid, render, audit."""
    tx = db.get(PosTransaction, tx_id, populate_existing=True)
    if tx is None or tx.status != PAID:
        return
    contract = db.execute(select(PosContract).where(PosContract.tx_id == tx_id)).scalar_one_or_none()
    if contract is None:
        return

    snapshot = dict(contract.snapshot or {})
    snapshot["purchase"] = {**as_record(snapshot.get("purchase")), "status": "paid"}
    contract.snapshot = snapshot

    if tx.contract_pdf_url:
        db.commit()
        return

    storage = storage or get_document_storage()
    signed_at = as_record(snapshot.get("signatures")).get("signedAt")
    year = (signed_at or utcnow().isoformat())[:4]
    pdf_url = storage.put(f"pos/contracts/{year}/tx-{safe_segment(str(tx_id))}.pdf", build_contract_pdf(snapshot))

    contract.status = "signed"
    contract.pdf_url = pdf_url
    contract.signed_at = utcnow()
    result = db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx_id, PosTransaction.contract_pdf_url.is_(None))
        .values(contract_id=contract.id, contract_pdf_url=pdf_url)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        logger.info(f"Contract for transaction {tx_id} was finalized concurrently")
        return

    append_audit_log(
        db, actor_id, AuditAction.SIGN_CONTRACT, tx_id=tx_id,
        payload={"contractId": contract.id, "pdfUrl": pdf_url, "signedAt": signed_at},
    )


def get_contract_for_transaction(db: Session, tx_id: int) -> Optional[PosContract]:
    return db.execute(select(PosContract).where(PosContract.tx_id == tx_id)).scalar_one_or_none()


def serialize_contract(contract: Optional[PosContract]) -> Optional[Dict[str, Any]]:
    if contract is None:
        return None
    return {
        "id": contract.id,
        "status": contract.status,
        "pdfUrl": contract.pdf_url,
        "signedAt": contract.signed_at,
        "snapshot": contract.snapshot,
    }
