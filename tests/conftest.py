"""
Pytest configuration and shared fixtures for the reconciliation engine test suite.
"""
import os
import shutil
import tempfile
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Generator

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)

# Every test runs "today" unless it passes its own date.
FIXED_NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="recon_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def test_config(temp_dir: Path, monkeypatch) -> "Config":
    """Provide a test configuration with isolated directories."""
    from config import Config

    # No admin overrides from a developer checkout
    monkeypatch.setenv("CONFIG_DIR", str(temp_dir / "config"))
    monkeypatch.delenv("KNOWN_COLLECTIONS", raising=False)

    config = Config()
    config.output_dir = temp_dir / "output"
    config.output_dir.mkdir(parents=True, exist_ok=True)
    config.db_path = temp_dir / "output" / "projections.db"
    config.vendors_csv = temp_dir / "data" / "vendors.csv"
    config.inbox_dir = temp_dir / "inbox"
    config.inbox_dir.mkdir(parents=True, exist_ok=True)

    config.vendors_csv.parent.mkdir(parents=True, exist_ok=True)

    return config


@pytest.fixture
def sample_vendors() -> list:
    from models.vendor import Vendor
    return [
        Vendor(id=1, name="Vendor One", vendor_code="V1", aliases=["V1 Inc.", "V1 Incorporated"]),
        Vendor(id=2, name="Riches Furniture", vendor_code="V2", aliases=["Riches", "V2"]),
        Vendor(id=3, name="Acme Textiles", vendor_code="V3", aliases=[]),
    ]


@pytest.fixture
def repository(test_config, sample_vendors) -> "ProjectionRepository":
    """Repository on a temp SQLite file with the sample vendors registered."""
    from pipeline.database import ProjectionRepository
    repo = ProjectionRepository(test_config.db_path)
    for vendor in sample_vendors:
        repo.upsert_vendor(vendor)
    return repo


@pytest.fixture
def resolver(sample_vendors) -> "VendorResolver":
    from pipeline.vendor_resolver import VendorResolver
    return VendorResolver(sample_vendors)


@pytest.fixture
def extractor() -> "CollectionExtractor":
    from config import DEFAULT_KNOWN_COLLECTIONS
    from pipeline.collection_extractor import CollectionExtractor
    return CollectionExtractor(DEFAULT_KNOWN_COLLECTIONS)


@pytest.fixture
def make_projection() -> Callable:
    """Factory for NewProjection rows with sensible defaults."""
    from models.projection import NewProjection

    def _make(**overrides):
        data = {
            "vendor_id": 1,
            "sku": "ABC123",
            "brand": "CB",
            "year": 2025,
            "month": 6,
            "projected_qty": 1000,
            "projected_value": 50000,
            "order_type": "regular",
        }
        data.update(overrides)
        return NewProjection(**data)

    return _make


@pytest.fixture
def make_po() -> Callable:
    """Factory for IncomingPO lines with sensible defaults."""
    from models.purchase_order import IncomingPO

    def _make(**overrides):
        data = {
            "po_number": "PO-1001",
            "vendor_name_raw": "V1 Inc.",
            "sku": "ABC123",
            "quantity": 1200,
            "value": 58000,
            "ship_date": date(2025, 6, 15),
        }
        data.update(overrides)
        return IncomingPO(**data)

    return _make


@pytest.fixture
def sample_vendors_csv(temp_dir: Path) -> Path:
    """Create a sample vendors CSV file."""
    csv_path = temp_dir / "vendors.csv"
    content = """id,name,vendor_code,aliases
1,Vendor One,V1,V1 Inc.|V1 Incorporated
2,Riches Furniture,V2,Riches|V2
3,Acme Textiles,V3,
x,Broken Row,V9,"""
    csv_path.write_text(content)
    return csv_path


@pytest.fixture
def sample_projections_csv(temp_dir: Path) -> Path:
    """Create a sample projections CSV file."""
    csv_path = temp_dir / "projections.csv"
    content = """vendor,sku,sku_description,collection,brand,year,month,quantity,value,order_type
Vendor One,ABC123,Oak Chair,,CB,2025,6,1000,50000,regular
Vendor One,XYZ789,Walnut Table,,CB2,2025,7,"1,500",90000,
Riches,,Hoxton sofa programme,Hoxton,CB,2025,9,300,120000,MTO
Unknown Vendor Co,QQQ1,Lamp,,CB,2025,6,10,100,regular
Vendor One,BAD1,Bad month,,CB,2025,13,10,100,regular"""
    csv_path.write_text(content)
    return csv_path


@pytest.fixture
def sample_po_csv(temp_dir: Path) -> Path:
    """Create a sample PO CSV file."""
    csv_path = temp_dir / "pos.csv"
    content = """po_number,vendor,sku,program_description,quantity,value,ship_date
PO-1001,V1 Inc.,ABC123,Standard replenishment,1200,58000,2025-06-15
PO-2001,Riches,HX-SOFA-01,MTO Hoxton Sep 2025,310,118000,09/10/2025
PO-3001,Nobody Ltd,ABC123,,50,2500,2025-06-20
PO-4001,Vendor One,NOPE,,5,100,
,Vendor One,ABC123,,5,100,2025-06-01
PO-5001,Vendor One,ABC123,,5,100,not-a-date"""
    csv_path.write_text(content)
    return csv_path


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
