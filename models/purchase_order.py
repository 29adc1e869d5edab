from datetime import date
from pydantic import BaseModel
from typing import Optional


class IncomingPO(BaseModel):
    """
    One already-ingested purchase order line from the PO import stream.

    quantity and value are non-negative integers in minor units (cents for
    value). ship_date may be missing on malformed rows; such POs are skipped
    by the matcher.
    """
    po_number: str
    vendor_name_raw: Optional[str] = None
    sku: Optional[str] = None
    program_description: Optional[str] = None
    quantity: int = 0
    value: int = 0
    ship_date: Optional[date] = None
