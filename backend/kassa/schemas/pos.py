"""POS request and response schemas.

The admin UI and the bridge agents speak camelCase JSON; fields are
snake_case here with camelCase aliases.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _optional_trimmed(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def _required_trimmed(value: Optional[str], message: str) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        raise ValueError(message)
    return trimmed


# --- Catalog ---

class LocationCreate(CamelModel):
    name: str
    address: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_required(cls, v: str) -> str:
        return _required_trimmed(v, "name is required")


class LocationResponse(CamelModel):
    id: int
    name: str
    address: Optional[str] = None
    is_active: bool

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class TerminalCreate(CamelModel):
    location_id: int
    label: str
    terminal_ref: Optional[str] = None
    provider: str = "bridge"
    mode: Literal["bridge", "connected", "external"] = "bridge"
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    zvt_password: Optional[str] = None
    agent_id: Optional[int] = None

    @field_validator("label")
    @classmethod
    def label_required(cls, v: str) -> str:
        return _required_trimmed(v, "label is required")


class TerminalResponse(CamelModel):
    id: int
    location_id: int
    provider: str
    terminal_ref: str
    label: str
    status: str
    mode: str
    host: Optional[str] = None
    port: Optional[int] = None
    agent_id: Optional[int] = None
    is_active: bool

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ItemCreate(CamelModel):
    type: Literal["artwork", "event"]
    title: str
    sku: Optional[str] = None
    price_gross_cents: int = Field(ge=0)
    vat_rate: Literal[0, 7, 19] = 19
    artist_name: Optional[str] = None

    @field_validator("title")
    @classmethod
    def title_required(cls, v: str) -> str:
        return _required_trimmed(v, "title is required")


class ItemResponse(CamelModel):
    id: int
    type: str
    title: str
    sku: Optional[str] = None
    price_gross_cents: int
    vat_rate: int
    currency: str
    artist_name: Optional[str] = None
    is_active: bool

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- Checkout ---

class CartLine(CamelModel):
    item_id: int
    qty: int

    @field_validator("qty")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("qty must be at least 1")
        return v


class BuyerInput(CamelModel):
    type: Literal["b2c", "b2b"]
    name: str
    company: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    vat_id: Optional[str] = None
    billing_address: Optional[str] = None
    shipping_address: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_required(cls, v: str) -> str:
        return _required_trimmed(v, "buyer.name is required")

    @field_validator("company", "phone", "vat_id", "billing_address", "shipping_address")
    @classmethod
    def trim_optional(cls, v: Optional[str]) -> Optional[str]:
        return _optional_trimmed(v)

    @field_validator("email")
    @classmethod
    def email_shape(cls, v: Optional[str]) -> Optional[str]:
        v = _optional_trimmed(v)
        if v is not None and ("@" not in v or v.startswith("@") or v.endswith("@")):
            raise ValueError("buyer.email is invalid")
        return v


class ContractArtworkInput(CamelModel):
    item_id: int
    artist_name: Optional[str] = None
    title: Optional[str] = None
    year: Optional[str] = None
    technique_size: Optional[str] = None
    edition_type: Optional[Literal["unique", "edition"]] = None


class ContractInput(CamelModel):
    artworks: List[ContractArtworkInput]
    delivery_method: Literal["pickup", "shipping", "forwarding"]
    estimated_delivery_date: Optional[str] = None
    buyer_signature_data_url: str

    @field_validator("artworks")
    @classmethod
    def artworks_not_empty(cls, v: List[ContractArtworkInput]) -> List[ContractArtworkInput]:
        if not v:
            raise ValueError("contract.artworks must contain at least one line")
        return v

    @field_validator("buyer_signature_data_url")
    @classmethod
    def signature_required(cls, v: str) -> str:
        return _required_trimmed(v, "contract buyer signature is required")


class CheckoutStartRequest(CamelModel):
    location_id: int
    terminal_id: Optional[int] = None
    payment_method: Literal["terminal_bridge", "terminal", "terminal_external", "cash"] = "terminal_bridge"
    cart: List[CartLine]
    buyer: BuyerInput
    contract: Optional[ContractInput] = None

    @field_validator("cart")
    @classmethod
    def cart_not_empty(cls, v: List[CartLine]) -> List[CartLine]:
        if not v:
            raise ValueError("cart must contain at least one line")
        return v


# --- Actions ---

class ExternalRefInput(CamelModel):
    terminal_slip_no: Optional[str] = None
    rrn: Optional[str] = None
    note: Optional[str] = None


class MarkPaidRequest(CamelModel):
    tx_id: int
    method: Literal["external", "cash"] = "external"
    slip_no: Optional[str] = None
    rrn: Optional[str] = None
    note: Optional[str] = None
    external_ref: Optional[ExternalRefInput] = None

    @field_validator("slip_no", "rrn", "note")
    @classmethod
    def trim_optional(cls, v: Optional[str]) -> Optional[str]:
        return _optional_trimmed(v)


class RefundRequest(CamelModel):
    reason: str
    amount_cents: Optional[int] = None

    @field_validator("reason")
    @classmethod
    def reason_required(cls, v: str) -> str:
        return _required_trimmed(v, "reason is required")

    @field_validator("amount_cents")
    @classmethod
    def amount_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("amountCents must be positive")
        return v


class StornoRequest(CamelModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_required(cls, v: str) -> str:
        return _required_trimmed(v, "reason is required")


class SendReceiptRequest(CamelModel):
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def email_shape(cls, v: Optional[str]) -> Optional[str]:
        v = _optional_trimmed(v)
        if v is not None and ("@" not in v or v.startswith("@") or v.endswith("@")):
            raise ValueError("email is invalid")
        return v


# --- Settings ---

class SellerSettingsInput(CamelModel):
    company_name: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class TaxSettingsInput(CamelModel):
    steuernummer: Optional[str] = None
    ust_id: Optional[str] = None
    finanzamt: Optional[str] = None


class PosSettingsUpdate(CamelModel):
    brand_name: Optional[str] = None
    logo_url: Optional[str] = None
    seller: Optional[SellerSettingsInput] = None
    tax: Optional[TaxSettingsInput] = None
    receipt_footer_lines: Optional[List[str]] = Field(None, max_length=10)
    locale: Optional[str] = None
    currency: Optional[str] = Field(None, pattern=r"^[A-Za-z]{3}$")

    @field_validator("receipt_footer_lines")
    @classmethod
    def footer_lines(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        if any(len(line) > 200 for line in v):
            raise ValueError("receiptFooterLines entries must be at most 200 characters")
        return [line.strip() for line in v if line.strip()]

    def changes(self) -> Dict[str, Any]:
        """Explicitly sent fields, keyed by their camelCase names."""
        return self.model_dump(by_alias=True, exclude_unset=True)


# --- Bridge agents ---

class AgentRegisterRequest(CamelModel):
    name: str
    location_label: Optional[str] = None
    paired_terminal_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def name_required(cls, v: str) -> str:
        return _required_trimmed(v, "name is required")


class CommandReportRequest(CamelModel):
    command_id: int
    ok: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @field_validator("error")
    @classmethod
    def trim_error(cls, v: Optional[str]) -> Optional[str]:
        return _optional_trimmed(v)


class AgentRegisterResponse(CamelModel):
    ok: bool = True
    agent_id: int
    agent_key: str
    name: str
    created_at: Optional[datetime] = None
