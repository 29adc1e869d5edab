from pydantic import BaseModel
from typing import Optional, List


class Vendor(BaseModel):
    """
    A canonical vendor from the vendor registry.
    aliases is a list of raw names seen in imports that resolve to this vendor.
    """
    id: int
    name: str
    vendor_code: Optional[str] = None
    aliases: List[str] = []

    @property
    def all_names(self) -> List[str]:
        """Return the canonical name plus all aliases for matching."""
        return [self.name] + self.aliases

