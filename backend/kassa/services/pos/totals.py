"""VAT-inclusive totals, VAT breakdown and invoice thresholds.

All amounts are integer cents. Net is derived per line from the gross
(``round(gross * 100 / (100 + rate))``) and rounded before summing.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional

from kassa.core.config import settings
from kassa.models.pos import VAT_RATES


@dataclass(frozen=True)
class Totals:
    gross_cents: int
    net_cents: int
    vat_cents: int

    def as_dict(self) -> dict[str, int]:
        return {"grossCents": self.gross_cents, "netCents": self.net_cents, "vatCents": self.vat_cents}


def compute_net_cents(gross_cents: int, vat_rate: int) -> int:
    """Reverse-calculate net from a VAT-inclusive gross, rounded half up."""
    if vat_rate not in VAT_RATES:
        raise ValueError(f"unsupported_vat_rate:{vat_rate}")
    if vat_rate == 0:
        return gross_cents
    net = Decimal(gross_cents * 100) / Decimal(100 + vat_rate)
    return int(net.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _line_gross(line: Mapping) -> int:
    return int(line["qty"]) * int(line["unitGrossCents"])


def build_totals(lines: Iterable[Mapping]) -> Totals:
    """Sum gross/net/VAT over snapshot lines (``qty``, ``unitGrossCents``, ``vatRate``)."""
    gross = net = vat = 0
    for line in lines:
        line_gross = _line_gross(line)
        line_net = compute_net_cents(line_gross, int(line["vatRate"]))
        gross += line_gross
        net += line_net
        vat += line_gross - line_net
    return Totals(gross_cents=gross, net_cents=net, vat_cents=vat)


def compute_vat_breakdown(lines: Iterable[Mapping]) -> list[dict[str, int]]:
    """Totals grouped by VAT rate, ascending by rate."""
    buckets: dict[int, dict[str, int]] = {}
    for line in lines:
        rate = int(line["vatRate"])
        line_gross = _line_gross(line)
        line_net = compute_net_cents(line_gross, rate)
        bucket = buckets.setdefault(rate, {"rate": rate, "grossCents": 0, "netCents": 0, "vatCents": 0})
        bucket["grossCents"] += line_gross
        bucket["netCents"] += line_net
        bucket["vatCents"] += line_gross - line_net
    return [buckets[rate] for rate in sorted(buckets)]


def invoice_required(buyer_type: Optional[str], gross_cents: int) -> bool:
    """Whether a full invoice must be issued for this buyer and amount."""
    if buyer_type == "b2b":
        return gross_cents >= settings.pos_invoice_threshold_b2b_cents
    if buyer_type == "b2c":
        return gross_cents >= settings.pos_invoice_threshold_b2c_cents
    return False


def has_invoice_buyer_data(
    buyer_type: Optional[str],
    name: Optional[str],
    company: Optional[str],
    billing_address: Optional[str],
    shipping_address: Optional[str] = None,
) -> bool:
    """Name and an address are always needed; business buyers also need a company."""
    address = (billing_address or "").strip() or (shipping_address or "").strip()
    if not (name or "").strip() or not address:
        return False
    if buyer_type == "b2b" and not (company or "").strip():
        return False
    return True
