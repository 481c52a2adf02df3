"""Bill of materials summaries and CSV export."""

from __future__ import annotations

import csv
from collections.abc import Sequence
from decimal import Decimal
from io import StringIO
from typing import Any

from takeoffcalc.models import Material, utcnow

CSV_HEADERS = ["SKU", "Description", "Quantity", "UOM", "Unit Price", "Total Price", "Currency", "Rule"]


def summarize_materials(job_id: str, materials: Sequence[Material], currency: str = "USD") -> dict[str, Any]:
    """Materials report for a job.

    Returns:
        Dict with ``items`` (one per material line) and ``summary``
        (total_items, total_value, currency, generated_at)
    """
    items = []
    total_value = Decimal(0)
    for material in materials:
        pricing = material.pricing
        total_price = pricing.total_price if pricing else None
        if total_price is not None:
            total_value += total_price
        items.append(
            {
                "sku": material.sku,
                "qty": material.qty,
                "uom": material.uom,
                "description": material.description,
                "unit_price": float(pricing.unit_price) if pricing and pricing.unit_price is not None else None,
                "total_price": float(total_price) if total_price is not None else None,
                "rule_id": material.rule_id,
                "source_features": list(material.sources.features),
            }
        )

    return {
        "job_id": job_id,
        "items": items,
        "summary": {
            "total_items": len(items),
            "total_value": float(total_value),
            "currency": currency,
            "generated_at": utcnow().isoformat(),
        },
    }


def materials_to_csv(materials: Sequence[Material]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADERS)
    for material in materials:
        pricing = material.pricing
        writer.writerow(
            [
                material.sku,
                material.description or "",
                f"{material.qty:g}",
                material.uom,
                "" if not pricing or pricing.unit_price is None else f"{pricing.unit_price:.2f}",
                "" if not pricing or pricing.total_price is None else f"{pricing.total_price:.2f}",
                pricing.currency if pricing else "",
                material.rule_id,
            ]
        )
    return output.getvalue()
