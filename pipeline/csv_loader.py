"""
CSV loaders for the two import streams.

PO file (already-ingested PO lines, one row per line):
  po_number, vendor, sku, program_description, quantity, value, ship_date

Projection file (one vendor's or many vendors' forecast rows):
  vendor, sku, sku_description, collection, brand, year, month,
  quantity, value, order_type

value columns are integer minor units (cents).  Dates are ISO (YYYY-MM-DD)
or US style (MM/DD/YYYY).  Malformed rows are logged and skipped; they
never abort a load.
"""
import csv
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from models.projection import NewProjection, ORDER_MTO, ORDER_REGULAR
from models.purchase_order import IncomingPO

logger = logging.getLogger(__name__)

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d-%b-%Y")
_MTO_MARKERS = {"mto", "spo", "make to order", "make-to-order"}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _to_int(value: Optional[str]) -> int:
    """Parse '1,200', '$45' or '12.0' into an int; blank is 0."""
    cleaned = (value or "").replace(",", "").replace("$", "").strip()
    if not cleaned:
        return 0
    try:
        return int(cleaned)
    except ValueError:
        return int(round(float(cleaned)))


def _to_date(value: Optional[str]) -> Optional[date]:
    cleaned = _clean(value)
    if not cleaned:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognised date {cleaned!r}")


def _order_type(value: Optional[str]) -> str:
    return ORDER_MTO if (value or "").strip().lower() in _MTO_MARKERS else ORDER_REGULAR


def load_purchase_orders(path: str | Path) -> list[IncomingPO]:
    """Read a PO CSV into IncomingPO lines. Rows without a PO number are skipped."""
    path = Path(path)
    pos: list[IncomingPO] = []
    with open(path, newline="", encoding="utf-8-sig") as f:
        for line_no, row in enumerate(csv.DictReader(f), start=2):
            po_number = _clean(row.get("po_number"))
            if not po_number:
                logger.warning("%s line %d: missing po_number — skipped", path.name, line_no)
                continue
            try:
                pos.append(IncomingPO(
                    po_number=po_number,
                    vendor_name_raw=_clean(row.get("vendor")),
                    sku=_clean(row.get("sku")),
                    program_description=_clean(row.get("program_description")),
                    quantity=_to_int(row.get("quantity")),
                    value=_to_int(row.get("value")),
                    ship_date=_to_date(row.get("ship_date")),
                ))
            except (ValueError, ValidationError) as exc:
                logger.warning("%s line %d: %s — skipped", path.name, line_no, exc)
    logger.info("Loaded %d PO line(s) from %s", len(pos), path.name)
    return pos


class ProjectionRows:
    """Projection CSV rows grouped by resolved vendor id."""

    def __init__(self):
        self.by_vendor: dict[int, list[NewProjection]] = {}
        self.rejected_rows = 0
        self.unresolved_vendors: list[str] = []

    def add(self, projection: NewProjection) -> None:
        self.by_vendor.setdefault(projection.vendor_id, []).append(projection)

    def reject(self, vendor_name: Optional[str] = None) -> None:
        self.rejected_rows += 1
        if vendor_name and vendor_name not in self.unresolved_vendors:
            self.unresolved_vendors.append(vendor_name)


def load_projections(path: str | Path, resolver) -> ProjectionRows:
    """
    Read a projection CSV, resolving the vendor column through *resolver*.

    Rows whose vendor cannot be resolved, or that fail validation, are
    counted as rejected.
    """
    path = Path(path)
    rows = ProjectionRows()
    with open(path, newline="", encoding="utf-8-sig") as f:
        for line_no, row in enumerate(csv.DictReader(f), start=2):
            vendor_name = _clean(row.get("vendor"))
            vendor_id = resolver.resolve(vendor_name)
            if vendor_id is None:
                logger.warning("%s line %d: unknown vendor %r — skipped", path.name, line_no, vendor_name)
                rows.reject(vendor_name)
                continue
            collection = _clean(row.get("collection"))
            try:
                rows.add(NewProjection(
                    vendor_id=vendor_id,
                    sku=_clean(row.get("sku")),
                    sku_description=_clean(row.get("sku_description")),
                    collection=collection.lower() if collection else None,
                    brand=_clean(row.get("brand")) or "",
                    year=int((row.get("year") or "").strip()),
                    month=int((row.get("month") or "").strip()),
                    projected_qty=_to_int(row.get("quantity")),
                    projected_value=_to_int(row.get("value")),
                    order_type=_order_type(row.get("order_type")),
                ))
            except (ValueError, ValidationError) as exc:
                logger.warning("%s line %d: %s — skipped", path.name, line_no, exc)
                rows.reject()
    logger.info(
        "Loaded %d projection row(s) for %d vendor(s) from %s (%d rejected)",
        sum(len(v) for v in rows.by_vendor.values()), len(rows.by_vendor),
        path.name, rows.rejected_rows,
    )
    return rows
