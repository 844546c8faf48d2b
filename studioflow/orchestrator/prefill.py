"""Pre-populate a fresh contract draft from the lead, package and invoice.

The three sources are plain read-only mappings supplied by the host screen
(lead record, selected package, invoice-in-progress). Missing keys fall back
to the draft defaults.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional

from studioflow.orchestrator.models import VAT_RATE, default_fields


def _includes_any(items: Iterable[Any], *needles: str) -> bool:
    for item in items or []:
        text = str(item).lower()
        if any(needle in text for needle in needles):
            return True
    return False


def _money(value: Any) -> Optional[float]:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    return amount or None


def build_initial_fields(
    lead: Mapping[str, Any],
    package: Optional[Mapping[str, Any]] = None,
    invoice: Optional[Mapping[str, Any]] = None,
    invoice_number: str = "",
) -> Dict[str, Dict[str, Any]]:
    """Return grouped draft fields for a lead opening the workflow fresh.

    Order extras (Z-card, e-folio, influencer project) are detected from the
    package's ``includes`` list. Money falls back from the invoice to the
    package price plus VAT.
    """

    package = package or {}
    invoice = invoice or {}
    includes = package.get("includes") or []
    fields = default_fields()

    fields["customer"].update(
        {
            "customer_name": lead.get("name") or "",
            "client_name_if_different": lead.get("parent_name") or "",
            "address": lead.get("address") or "",
            "postcode": lead.get("postcode") or "",
            "phone": lead.get("phone") or "",
            "email": lead.get("email") or "",
            "is_vip": bool(lead.get("is_vip")),
        }
    )

    fields["studio"].update(
        {
            "studio_number": invoice.get("studioNumber") or "",
            "photographer": invoice.get("photographer") or "",
            "invoice_number": invoice_number or "",
        }
    )

    fields["order"].update(
        {
            "digital_images_qty": package.get("imageCount") or package.get("image_count") or "All",
            "digital_z_card": _includes_any(includes, "z-card"),
            "efolio": _includes_any(includes, "efolio", "e-folio"),
            "project_influencer": _includes_any(includes, "influencer"),
            "notes": f"Package: {package.get('name') or 'Standard Package'}",
        }
    )

    price = _money(package.get("price")) or 0.0
    fields["payment"].update(
        {
            "subtotal": _money(invoice.get("subtotal")) or price,
            "vat_amount": _money(invoice.get("vatAmount")) or round(price * VAT_RATE, 2),
            "total": _money(invoice.get("total")) or round(price * (1 + VAT_RATE), 2),
            "payment_method": invoice.get("paymentMethod") or "card",
            "auth_code": invoice.get("authCode") or "",
        }
    )
    return fields
