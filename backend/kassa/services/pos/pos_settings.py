"""Admin-editable POS settings.

Seller identity, tax identifiers and receipt footer lines printed on
receipts and invoices. Each top-level key is stored as one JSON row in
``pos_settings``; missing keys fall back to the environment defaults.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kassa.core.config import settings
from kassa.db.base import utcnow
from kassa.models.pos import AuditAction, PosSetting
from kassa.services.pos.audit import append_audit_log
from kassa.services.pos.payment_status import as_record

logger = logging.getLogger(__name__)

SETTING_KEYS = ("brandName", "logoUrl", "seller", "tax", "receiptFooterLines", "locale", "currency")
MAX_FOOTER_LINES = 10


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def build_settings_snapshot(stored: Dict[str, Any]) -> Dict[str, Any]:
    """Merge stored values over the environment defaults."""
    seller = as_record(stored.get("seller"))
    tax = as_record(stored.get("tax"))
    footer = stored.get("receiptFooterLines")
    return {
        "brandName": _text(stored.get("brandName")) or settings.pos_brand_name,
        "logoUrl": _text(stored.get("logoUrl")),
        "seller": {
            "companyName": _text(seller.get("companyName")) or settings.pos_seller_name,
            "addressLine1": _text(seller.get("addressLine1")) or settings.pos_seller_address_line1,
            "addressLine2": _text(seller.get("addressLine2")) or settings.pos_seller_address_line2,
            "email": _text(seller.get("email")) or settings.pos_seller_email,
            "phone": _text(seller.get("phone")) or settings.pos_seller_phone,
        },
        "tax": {
            "steuernummer": _text(tax.get("steuernummer")) or _text(settings.pos_seller_tax_id),
            "ustId": _text(tax.get("ustId")) or _text(settings.pos_seller_vat_id),
            "finanzamt": _text(tax.get("finanzamt")),
        },
        "receiptFooterLines": [
            line.strip() for line in (footer if isinstance(footer, list) else []) if _text(line)
        ][:MAX_FOOTER_LINES],
        "locale": _text(stored.get("locale")) or "de-DE",
        "currency": (_text(stored.get("currency")) or "EUR").upper(),
    }


def get_pos_settings(db: Session) -> Dict[str, Any]:
    rows = db.execute(select(PosSetting).where(PosSetting.key.in_(SETTING_KEYS))).scalars().all()
    return build_settings_snapshot({row.key: row.value for row in rows})


def _store(db: Session, key: str, value: Any, actor_id: int) -> None:
    now = utcnow()
    result = db.execute(
        update(PosSetting)
        .where(PosSetting.key == key)
        .values(value=value, updated_by_admin_id=actor_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        db.commit()
        return

    db.add(PosSetting(key=key, value=value, updated_by_admin_id=actor_id, updated_at=now))
    try:
        db.commit()
    except IntegrityError:
        # Another admin inserted the key first; last write wins
        db.rollback()
        db.execute(
            update(PosSetting)
            .where(PosSetting.key == key)
            .values(value=value, updated_by_admin_id=actor_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()


def update_pos_settings(db: Session, actor_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Store the given top-level keys and return the resulting snapshot.

    ``seller`` and ``tax`` are merged field by field into the stored value.
    """
    changed = [key for key in SETTING_KEYS if key in changes]
    if not changed:
        return get_pos_settings(db)

    stored = {
        row.key: row.value
        for row in db.execute(select(PosSetting).where(PosSetting.key.in_(changed))).scalars().all()
    }
    for key in changed:
        value = changes[key]
        if key in ("seller", "tax") and isinstance(value, dict):
            value = {**as_record(stored.get(key)), **value}
        _store(db, key, value, actor_id)

    logger.info(f"POS settings {', '.join(changed)} updated by admin {actor_id}")
    append_audit_log(db, actor_id, AuditAction.UPDATE_SETTINGS, payload={"keys": changed})
    return get_pos_settings(db)
