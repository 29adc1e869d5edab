"""
SQLite persistence layer for the projection reconciliation engine.

ProjectionRepository is the single keyed store behind every engine
component.  It is injected into MatchingEngine, LifecycleManager,
ArchivalService and ReportingQueries; nothing holds a module-level handle.

Tables
------
  vendors / vendor_aliases  Canonical vendor registry read by VendorResolver.
  projections               Live, mutable projection rows.
  projection_history        Append-only copies taken before each re-import.
  expired_projections       Review ledger for projections moved to expired.
  purchase_orders           Ingested PO lines, looked up by manual matching.
  import_batches            Source files already processed by the watcher.
  audit_log                 Every lifecycle transition, with actor.

Every state transition on a projection is a single conditional UPDATE
(guarded on the current match_status) so a row is never left half-updated
and two writers can never both consume the same open projection.
"""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional

from models.projection import (
    ExpiredProjection, NewProjection, Projection, ProjectionHistory,
    ORDER_TYPES, STATUS_EXPIRED, STATUS_UNMATCHED, VERIFICATION_PENDING, VERIFICATION_RESTORED,
)
from models.purchase_order import IncomingPO
from models.result import ExpirationResult, ExpiredSummary, ProjectionFilter
from models.vendor import Vendor
from .errors import StaleWriteError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS vendors (
    id           INTEGER PRIMARY KEY,
    name         TEXT NOT NULL,
    vendor_code  TEXT
);

CREATE TABLE IF NOT EXISTS vendor_aliases (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    alias       TEXT NOT NULL UNIQUE,
    vendor_id   INTEGER NOT NULL REFERENCES vendors (id),
    notes       TEXT,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projections (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    vendor_id          INTEGER NOT NULL,
    sku                TEXT,
    sku_description    TEXT,
    collection         TEXT,
    brand              TEXT NOT NULL DEFAULT '',
    year               INTEGER NOT NULL,
    month              INTEGER NOT NULL,
    projected_qty      INTEGER NOT NULL DEFAULT 0,
    projected_value    INTEGER NOT NULL DEFAULT 0,
    order_type         TEXT NOT NULL DEFAULT 'regular',

    -- Matching state: unmatched | partial | matched | expired
    match_status       TEXT NOT NULL DEFAULT 'unmatched',
    matched_po_number  TEXT,
    matched_at         TEXT,
    actual_qty         INTEGER,
    actual_value       INTEGER,
    quantity_variance  INTEGER,
    value_variance     INTEGER,
    variance_pct       INTEGER,

    comment            TEXT,
    commented_at       TEXT,
    commented_by       TEXT,

    imported_at        TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_projections_vendor_status ON projections (vendor_id, match_status);
CREATE INDEX IF NOT EXISTS idx_projections_period        ON projections (year, month);

CREATE TABLE IF NOT EXISTS projection_history (
    history_id         INTEGER PRIMARY KEY AUTOINCREMENT,
    projection_id      INTEGER NOT NULL,
    vendor_id          INTEGER NOT NULL,
    sku                TEXT,
    sku_description    TEXT,
    collection         TEXT,
    brand              TEXT NOT NULL DEFAULT '',
    year               INTEGER NOT NULL,
    month              INTEGER NOT NULL,
    projected_qty      INTEGER NOT NULL DEFAULT 0,
    projected_value    INTEGER NOT NULL DEFAULT 0,
    order_type         TEXT NOT NULL,
    match_status       TEXT NOT NULL,
    matched_po_number  TEXT,
    matched_at         TEXT,
    actual_qty         INTEGER,
    actual_value       INTEGER,
    quantity_variance  INTEGER,
    value_variance     INTEGER,
    variance_pct       INTEGER,
    comment            TEXT,
    commented_at       TEXT,
    commented_by       TEXT,
    imported_at        TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    archived_at        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_history_vendor ON projection_history (vendor_id, archived_at DESC);

CREATE TABLE IF NOT EXISTS expired_projections (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    original_projection_id  INTEGER NOT NULL,
    vendor_id               INTEGER NOT NULL,
    sku                     TEXT,
    collection              TEXT,
    brand                   TEXT NOT NULL DEFAULT '',
    year                    INTEGER NOT NULL,
    month                   INTEGER NOT NULL,
    projected_qty           INTEGER NOT NULL DEFAULT 0,
    projected_value         INTEGER NOT NULL DEFAULT 0,
    order_type              TEXT NOT NULL,

    expired_at              TEXT NOT NULL,
    expiration_reason       TEXT NOT NULL,   -- past_90_day_window | past_30_day_window | manual_removal
    threshold_days          INTEGER NOT NULL,
    target_month_end        TEXT NOT NULL,
    days_overdue            INTEGER NOT NULL,

    -- pending | verified | cancelled | restored
    verification_status     TEXT NOT NULL DEFAULT 'pending',
    verified_at             TEXT,
    verified_by             TEXT,
    verification_notes      TEXT,
    restored_at             TEXT,
    restored_by             TEXT
);

CREATE INDEX IF NOT EXISTS idx_expired_status ON expired_projections (verification_status);

CREATE TABLE IF NOT EXISTS purchase_orders (
    po_number            TEXT NOT NULL,
    line_no              INTEGER NOT NULL,       -- 1-based position within the PO
    sku                  TEXT,
    vendor_name_raw      TEXT,
    vendor_id            INTEGER,
    program_description  TEXT,
    quantity             INTEGER NOT NULL DEFAULT 0,
    value                INTEGER NOT NULL DEFAULT 0,
    ship_date            TEXT,
    recorded_at          TEXT NOT NULL,
    PRIMARY KEY (po_number, line_no)
);

CREATE TABLE IF NOT EXISTS import_batches (
    source_file   TEXT PRIMARY KEY,
    kind          TEXT NOT NULL,            -- purchase_orders | projections
    source_mtime  REAL NOT NULL DEFAULT 0,
    processed_at  TEXT NOT NULL,
    summary       TEXT
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    entity      TEXT    NOT NULL,   -- projection:<id> | expired:<id> | vendor:<id>
    timestamp   TEXT    NOT NULL,   -- ISO-8601 UTC
    action      TEXT    NOT NULL,   -- matched | manual_matched | unmatched | expired |
                                    -- removed | restored | verified | order_type_changed |
                                    -- archived | imported
    actor       TEXT    NOT NULL DEFAULT 'system',
    detail      TEXT                -- optional JSON blob with action-specific context
);

CREATE INDEX IF NOT EXISTS idx_audit_entity    ON audit_log (entity);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log (timestamp DESC);
"""

_PROJECTION_COLUMNS = (
    "vendor_id, sku, sku_description, collection, brand, year, month, "
    "projected_qty, projected_value, order_type, match_status, matched_po_number, "
    "matched_at, actual_qty, actual_value, quantity_variance, value_variance, "
    "variance_pct, comment, commented_at, commented_by, imported_at, updated_at"
)

# Open projections with their due-window end and applicable window size.
_DUE_WINDOWS = """
    SELECT
        p.*,
        date(printf('%04d-%02d-01', p.year, p.month), '+1 month', '-1 day') AS month_end,
        CASE WHEN p.order_type = 'mto' THEN :mto_days ELSE :regular_days END AS threshold
    FROM projections p
    WHERE p.match_status IN ('unmatched', 'partial')
"""

_PAST_WINDOW = "date(:today) > date(d.month_end, '-' || d.threshold || ' days')"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _filter_clauses(flt: Optional[ProjectionFilter]) -> tuple[list[str], list]:
    clauses: list[str] = []
    params: list = []
    if flt is None:
        return clauses, params
    if flt.vendor_id is not None:
        clauses.append("vendor_id = ?")
        params.append(flt.vendor_id)
    if flt.brand:
        clauses.append("brand = ?")
        params.append(flt.brand)
    if flt.year is not None:
        clauses.append("year = ?")
        params.append(flt.year)
    if flt.month is not None:
        clauses.append("month = ?")
        params.append(flt.month)
    return clauses, params


class ProjectionRepository:
    """Thin wrapper around an SQLite database file for projection state."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._vendor_locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @contextmanager
    def _conn(self, immediate: bool = False):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Database schema ready: %s", self.db_path)

    @contextmanager
    def vendor_lock(self, vendor_id: int) -> Iterator[None]:
        """Serialise load-index-mutate cycles for one vendor."""
        with self._locks_guard:
            lock = self._vendor_locks.setdefault(vendor_id, threading.Lock())
        with lock:
            yield

    # ------------------------------------------------------------------
    # Vendor registry
    # ------------------------------------------------------------------

    def upsert_vendor(self, vendor: Vendor) -> None:
        """Insert or update a vendor and add any aliases not yet known."""
        now = _utcnow()
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO vendors (id, name, vendor_code) VALUES (?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name        = excluded.name,
                       vendor_code = excluded.vendor_code""",
                (vendor.id, vendor.name.strip(), vendor.vendor_code),
            )
            for alias in vendor.aliases:
                conn.execute(
                    """INSERT INTO vendor_aliases (alias, vendor_id, created_at)
                       VALUES (?, ?, ?)
                       ON CONFLICT(alias) DO UPDATE SET vendor_id = excluded.vendor_id""",
                    (alias.strip(), vendor.id, now),
                )

    def add_alias(self, alias: str, vendor_id: int, notes: Optional[str] = None) -> None:
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO vendor_aliases (alias, vendor_id, notes, created_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(alias) DO UPDATE SET
                       vendor_id = excluded.vendor_id,
                       notes     = excluded.notes""",
                (alias.strip(), vendor_id, notes, _utcnow()),
            )
        self.log_audit(f"vendor:{vendor_id}", "alias_added", detail={"alias": alias})

    def list_vendors(self) -> list[Vendor]:
        with self._conn() as conn:
            vendors = conn.execute(
                "SELECT id, name, vendor_code FROM vendors ORDER BY name"
            ).fetchall()
            aliases = conn.execute(
                "SELECT alias, vendor_id FROM vendor_aliases ORDER BY id"
            ).fetchall()
        by_vendor: dict[int, list[str]] = {}
        for a in aliases:
            by_vendor.setdefault(a["vendor_id"], []).append(a["alias"])
        return [
            Vendor(
                id=v["id"],
                name=v["name"],
                vendor_code=v["vendor_code"],
                aliases=by_vendor.get(v["id"], []),
            )
            for v in vendors
        ]

    # ------------------------------------------------------------------
    # Projections: reads
    # ------------------------------------------------------------------

    def get_projection(self, projection_id: int) -> Optional[Projection]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM projections WHERE id = ?", (projection_id,)
            ).fetchone()
        return Projection(**dict(row)) if row else None

    def list_open_projections(self, vendor_id: Optional[int] = None) -> list[Projection]:
        """Projections still available for matching (unmatched or partial)."""
        sql = "SELECT * FROM projections WHERE match_status IN ('unmatched', 'partial')"
        params: list = []
        if vendor_id is not None:
            sql += " AND vendor_id = ?"
            params.append(vendor_id)
        with self._conn() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [Projection(**dict(r)) for r in rows]

    def query_projections(
        self,
        flt: Optional[ProjectionFilter] = None,
        statuses: Optional[Iterable[str]] = None,
        order_type: Optional[str] = None,
        exclude_order_type: Optional[str] = None,
        order_by: str = "id",
    ) -> list[Projection]:
        """
        Return projections matching an explicit filter.

        Args:
            flt:                 vendor / brand / year / month restriction.
            statuses:            Restrict to these match_status values.
            order_type:          Only this order type.
            exclude_order_type:  Everything except this order type.
            order_by:            Trusted ORDER BY expression (never user input).
        """
        clauses, params = _filter_clauses(flt)
        if statuses:
            statuses = list(statuses)
            clauses.append(f"match_status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if order_type:
            clauses.append("order_type = ?")
            params.append(order_type)
        if exclude_order_type:
            clauses.append("order_type != ?")
            params.append(exclude_order_type)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM projections {where} ORDER BY {order_by}", params
            ).fetchall()
        return [Projection(**dict(r)) for r in rows]

    def filter_options(self) -> dict:
        """Vendors and brands present in the live projection set."""
        with self._conn() as conn:
            vendors = conn.execute(
                """SELECT DISTINCT p.vendor_id AS id,
                          COALESCE(v.name, 'Vendor ID ' || p.vendor_id) AS name,
                          COALESCE(v.vendor_code, '') AS vendor_code
                   FROM projections p
                   LEFT JOIN vendors v ON v.id = p.vendor_id
                   ORDER BY name"""
            ).fetchall()
            brands = conn.execute(
                """SELECT DISTINCT brand FROM projections
                   WHERE TRIM(COALESCE(brand, '')) != ''
                   ORDER BY brand"""
            ).fetchall()
        return {
            "vendors": [dict(v) for v in vendors],
            "brands": [b["brand"] for b in brands],
        }

    # ------------------------------------------------------------------
    # Projections: writes
    # ------------------------------------------------------------------

    def insert_projections(self, projections: Iterable[NewProjection]) -> list[int]:
        """Insert new unmatched projections. Returns the assigned ids."""
        now = _utcnow()
        with self._conn() as conn:
            return self._insert_projections(conn, projections, now)

    @staticmethod
    def _insert_projections(conn, projections: Iterable[NewProjection], now: str) -> list[int]:
        ids = []
        for p in projections:
            cur = conn.execute(
                """INSERT INTO projections (
                       vendor_id, sku, sku_description, collection, brand, year, month,
                       projected_qty, projected_value, order_type, match_status,
                       imported_at, updated_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'unmatched', ?, ?)""",
                (
                    p.vendor_id, p.sku, p.sku_description, p.collection, p.brand,
                    p.year, p.month, p.projected_qty, p.projected_value, p.order_type,
                    now, now,
                ),
            )
            ids.append(cur.lastrowid)
        return ids

    def apply_match(
        self,
        projection_id: int,
        po_number: str,
        actual_qty: int,
        actual_value: int,
        quantity_variance: int,
        value_variance: int,
        variance_pct: int,
        matched_at: Optional[str] = None,
        actor: str = "system",
        action: str = "matched",
        detail: Optional[dict] = None,
    ) -> None:
        """
        Bind a PO to an open projection in one conditional write.

        Raises StaleWriteError if the projection is no longer unmatched or
        partial (consumed by another run, expired, or deleted).
        """
        matched_at = matched_at or _utcnow()
        with self._conn() as conn:
            conn.execute(
                """UPDATE projections SET
                       match_status      = 'matched',
                       matched_po_number = ?,
                       matched_at        = ?,
                       actual_qty        = ?,
                       actual_value      = ?,
                       quantity_variance = ?,
                       value_variance    = ?,
                       variance_pct      = ?,
                       updated_at        = ?
                   WHERE id = ? AND match_status IN ('unmatched', 'partial')""",
                (
                    po_number, matched_at, actual_qty, actual_value,
                    quantity_variance, value_variance, variance_pct, matched_at,
                    projection_id,
                ),
            )
            if conn.execute("SELECT changes()").fetchone()[0] == 0:
                raise StaleWriteError(projection_id)
            self._audit(
                conn, f"projection:{projection_id}", action, actor,
                {"po_number": po_number, "variance_pct": variance_pct, **(detail or {})},
            )

    def clear_match(self, projection_id: int, actor: str = "system") -> bool:
        """Revert a matched projection to unmatched. Returns False if it was not matched."""
        with self._conn() as conn:
            before = conn.execute(
                "SELECT matched_po_number FROM projections WHERE id = ?", (projection_id,)
            ).fetchone()
            conn.execute(
                """UPDATE projections SET
                       match_status      = 'unmatched',
                       matched_po_number = NULL,
                       matched_at        = NULL,
                       actual_qty        = NULL,
                       actual_value      = NULL,
                       quantity_variance = NULL,
                       value_variance    = NULL,
                       variance_pct      = NULL,
                       updated_at        = ?
                   WHERE id = ? AND match_status = 'matched'""",
                (_utcnow(), projection_id),
            )
            if conn.execute("SELECT changes()").fetchone()[0] == 0:
                return False
            self._audit(
                conn, f"projection:{projection_id}", "unmatched", actor,
                {"po_number": before["matched_po_number"]},
            )
            return True

    def set_order_type(self, projection_id: int, order_type: str, actor: str = "system") -> bool:
        if order_type not in ORDER_TYPES:
            raise ValueError(f"Invalid order type {order_type!r}. Must be one of {ORDER_TYPES}")
        with self._conn() as conn:
            conn.execute(
                "UPDATE projections SET order_type = ?, updated_at = ? WHERE id = ?",
                (order_type, _utcnow(), projection_id),
            )
            if conn.execute("SELECT changes()").fetchone()[0] == 0:
                return False
            self._audit(
                conn, f"projection:{projection_id}", "order_type_changed", actor,
                {"order_type": order_type},
            )
            return True

    def remove_projection(
        self,
        projection_id: int,
        reason: str,
        actor: str,
        today: str,
        now: Optional[str] = None,
    ) -> Optional[int]:
        """
        Force an open projection to expired and append a ledger entry.

        Returns the new expired_projections id, or None if the projection was
        not open (nothing is written in that case).
        """
        now = now or _utcnow()
        with self._conn(immediate=True) as conn:
            conn.execute(
                """UPDATE projections SET
                       match_status = 'expired',
                       comment      = ?,
                       commented_at = ?,
                       commented_by = ?,
                       updated_at   = ?
                   WHERE id = ? AND match_status IN ('unmatched', 'partial')""",
                (reason, now, actor, now, projection_id),
            )
            if conn.execute("SELECT changes()").fetchone()[0] == 0:
                return None
            cur = conn.execute(
                """INSERT INTO expired_projections (
                       original_projection_id, vendor_id, sku, collection, brand, year, month,
                       projected_qty, projected_value, order_type,
                       expired_at, expiration_reason, threshold_days, target_month_end,
                       days_overdue, verification_status, verification_notes
                   )
                   SELECT
                       id, vendor_id, sku, collection, brand, year, month,
                       projected_qty, projected_value, order_type,
                       :now, 'manual_removal', 0, month_end,
                       MAX(CAST(julianday(:today) - julianday(month_end) AS INTEGER), 0),
                       :pending, :reason
                   FROM (
                       SELECT p.*,
                              date(printf('%04d-%02d-01', p.year, p.month), '+1 month', '-1 day')
                                  AS month_end
                       FROM projections p WHERE p.id = :id
                   )""",
                {"now": now, "today": today, "reason": reason, "id": projection_id,
                 "pending": VERIFICATION_PENDING},
            )
            self._audit(
                conn, f"projection:{projection_id}", "removed", actor,
                {"reason": reason, "expired_id": cur.lastrowid},
            )
            return cur.lastrowid

    def expire_due(
        self,
        today: str,
        regular_days: int,
        mto_days: int,
        now: Optional[str] = None,
    ) -> ExpirationResult:
        """
        Set-based expiration of every open projection past its order window.

        A projection is past its window when
            today > last_day_of(year, month) - window_days
        with window_days = mto_days for MTO rows and regular_days otherwise.
        Ledger insert and status update run in one transaction; re-running
        with the same *today* is a no-op because expired rows are no longer
        open.
        """
        now = now or _utcnow()
        params = {
            "today": today,
            "now": now,
            "regular_days": regular_days,
            "mto_days": mto_days,
            "pending": VERIFICATION_PENDING,
        }
        with self._conn(immediate=True) as conn:
            counts = conn.execute(
                f"""SELECT
                        COUNT(*) AS total,
                        SUM(CASE WHEN d.order_type = 'mto' THEN 1 ELSE 0 END) AS spo
                    FROM ({_DUE_WINDOWS}) d
                    WHERE {_PAST_WINDOW}""",
                params,
            ).fetchone()
            total = counts["total"] or 0
            if total == 0:
                return ExpirationResult()

            conn.execute(
                f"""INSERT INTO expired_projections (
                        original_projection_id, vendor_id, sku, collection, brand, year, month,
                        projected_qty, projected_value, order_type,
                        expired_at, expiration_reason, threshold_days, target_month_end,
                        days_overdue, verification_status
                    )
                    SELECT
                        d.id, d.vendor_id, d.sku, d.collection, d.brand, d.year, d.month,
                        d.projected_qty, d.projected_value, d.order_type,
                        :now, 'past_' || d.threshold || '_day_window', d.threshold, d.month_end,
                        CAST(julianday(:today)
                             - julianday(date(d.month_end, '-' || d.threshold || ' days'))
                             AS INTEGER),
                        :pending
                    FROM ({_DUE_WINDOWS}) d
                    WHERE {_PAST_WINDOW}""",
                params,
            )
            conn.execute(
                f"""INSERT INTO audit_log (entity, timestamp, action, actor, detail)
                    SELECT 'projection:' || d.id, :now, 'expired', 'system',
                           json_object('reason', 'past_' || d.threshold || '_day_window')
                    FROM ({_DUE_WINDOWS}) d
                    WHERE {_PAST_WINDOW}""",
                params,
            )
            conn.execute(
                f"""UPDATE projections SET
                        match_status = 'expired',
                        comment      = 'Auto-expired: no PO received within '
                                       || (CASE WHEN order_type = 'mto' THEN :mto_days
                                                ELSE :regular_days END)
                                       || ' days of target month end',
                        commented_at = :now,
                        commented_by = 'system',
                        updated_at   = :now
                    WHERE id IN (SELECT d.id FROM ({_DUE_WINDOWS}) d WHERE {_PAST_WINDOW})""",
                params,
            )
            spo = counts["spo"] or 0
            return ExpirationResult(
                expired_count=total,
                regular_expired=total - spo,
                spo_expired=spo,
            )

    # ------------------------------------------------------------------
    # Archival
    # ------------------------------------------------------------------

    @staticmethod
    def _archive(conn, vendor_id: int, archived_at: str) -> int:
        conn.execute(
            f"""INSERT INTO projection_history (projection_id, {_PROJECTION_COLUMNS}, archived_at)
                SELECT id, {_PROJECTION_COLUMNS}, ?
                FROM projections WHERE vendor_id = ?
                ORDER BY id""",
            (archived_at, vendor_id),
        )
        archived = conn.execute("SELECT changes()").fetchone()[0]
        conn.execute("DELETE FROM projections WHERE vendor_id = ?", (vendor_id,))
        ProjectionRepository._audit(
            conn, f"vendor:{vendor_id}", "archived", "system", {"archived": archived},
        )
        return archived

    def archive_vendor(self, vendor_id: int, archived_at: Optional[str] = None) -> int:
        """Copy all of a vendor's projections to history, then delete them."""
        with self._conn(immediate=True) as conn:
            return self._archive(conn, vendor_id, archived_at or _utcnow())

    def replace_vendor_projections(
        self,
        vendor_id: int,
        projections: Iterable[NewProjection],
        archived_at: Optional[str] = None,
    ) -> tuple[int, list[int]]:
        """
        Archive the vendor's current rows and insert *projections* atomically.

        Returns (archived_count, new_ids).
        """
        archived_at = archived_at or _utcnow()
        with self._conn(immediate=True) as conn:
            archived = self._archive(conn, vendor_id, archived_at)
            ids = self._insert_projections(conn, projections, archived_at)
        return archived, ids

    def list_history(
        self,
        vendor_id: int,
        sku: Optional[str] = None,
        year: Optional[int] = None,
    ) -> list[ProjectionHistory]:
        clauses = ["vendor_id = ?"]
        params: list = [vendor_id]
        if sku:
            clauses.append("LOWER(sku) = LOWER(?)")
            params.append(sku.strip())
        if year is not None:
            clauses.append("year = ?")
            params.append(year)
        with self._conn() as conn:
            rows = conn.execute(
                f"""SELECT * FROM projection_history
                    WHERE {' AND '.join(clauses)}
                    ORDER BY archived_at DESC, year, month, history_id""",
                params,
            ).fetchall()
        out = []
        for r in rows:
            data = dict(r)
            data["id"] = data.pop("projection_id")
            out.append(ProjectionHistory(**data))
        return out

    # ------------------------------------------------------------------
    # Expired-projection ledger
    # ------------------------------------------------------------------

    def get_expired(self, expired_id: int) -> Optional[ExpiredProjection]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM expired_projections WHERE id = ?", (expired_id,)
            ).fetchone()
        return ExpiredProjection(**dict(row)) if row else None

    def list_expired(
        self,
        flt: Optional[ProjectionFilter] = None,
        status: Optional[str] = None,
    ) -> list[ExpiredProjection]:
        clauses, params = _filter_clauses(flt)
        if status:
            clauses.append("verification_status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM expired_projections {where} ORDER BY expired_at DESC, id DESC",
                params,
            ).fetchall()
        return [ExpiredProjection(**dict(r)) for r in rows]

    def expired_summary(self) -> ExpiredSummary:
        with self._conn() as conn:
            row = conn.execute(
                """SELECT
                       COUNT(*) AS total,
                       SUM(CASE WHEN verification_status = 'pending'   THEN 1 ELSE 0 END) AS pending,
                       SUM(CASE WHEN verification_status = 'verified'  THEN 1 ELSE 0 END) AS verified,
                       SUM(CASE WHEN verification_status = 'cancelled' THEN 1 ELSE 0 END) AS cancelled,
                       SUM(CASE WHEN verification_status = 'restored'  THEN 1 ELSE 0 END) AS restored
                   FROM expired_projections"""
            ).fetchone()
        return ExpiredSummary(**{k: (row[k] or 0) for k in row.keys()})

    def restore_expired(self, expired_id: int, restored_by: str) -> bool:
        """
        Mark a ledger entry restored and reopen its projection, atomically.

        Returns True if the originating projection was flipped back to
        unmatched, False if it no longer exists or is not expired (the ledger
        entry is marked restored either way).
        """
        now = _utcnow()
        with self._conn(immediate=True) as conn:
            row = conn.execute(
                "SELECT original_projection_id FROM expired_projections WHERE id = ?",
                (expired_id,),
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                """UPDATE expired_projections SET
                       verification_status = ?,
                       restored_at         = ?,
                       restored_by         = ?
                   WHERE id = ?""",
                (VERIFICATION_RESTORED, now, restored_by, expired_id),
            )
            conn.execute(
                """UPDATE projections SET
                       match_status = ?,
                       comment      = NULL,
                       commented_at = NULL,
                       commented_by = NULL,
                       updated_at   = ?
                   WHERE id = ? AND match_status = ?""",
                (STATUS_UNMATCHED, now, row["original_projection_id"], STATUS_EXPIRED),
            )
            reopened = conn.execute("SELECT changes()").fetchone()[0] > 0
            self._audit(
                conn, f"expired:{expired_id}", "restored", restored_by,
                {"projection_id": row["original_projection_id"], "reopened": reopened},
            )
            return reopened

    def set_verification(
        self,
        expired_id: int,
        status: str,
        verified_by: str,
        notes: Optional[str] = None,
    ) -> bool:
        with self._conn() as conn:
            conn.execute(
                """UPDATE expired_projections SET
                       verification_status = ?,
                       verified_at         = ?,
                       verified_by         = ?,
                       verification_notes  = COALESCE(?, verification_notes)
                   WHERE id = ? AND verification_status != ?""",
                (status, _utcnow(), verified_by, notes, expired_id, VERIFICATION_RESTORED),
            )
            if conn.execute("SELECT changes()").fetchone()[0] == 0:
                return False
            self._audit(
                conn, f"expired:{expired_id}", "verified", verified_by,
                {"status": status, "notes": notes},
            )
            return True

    # ------------------------------------------------------------------
    # Purchase orders
    # ------------------------------------------------------------------

    def record_purchase_orders(
        self,
        pos: Iterable[IncomingPO],
        vendor_ids: Optional[dict[str, Optional[int]]] = None,
    ) -> int:
        """
        Store ingested PO lines, numbered in input order within each PO.

        A PO present in *pos* replaces every line previously recorded for it,
        so re-importing a file never duplicates or mixes lines.
        vendor_ids maps a PO number to its resolved vendor id, if known.
        """
        vendor_ids = vendor_ids or {}
        by_po: dict[str, list[IncomingPO]] = {}
        for po in pos:
            by_po.setdefault(po.po_number, []).append(po)

        now = _utcnow()
        count = 0
        with self._conn() as conn:
            for po_number, lines in by_po.items():
                conn.execute("DELETE FROM purchase_orders WHERE po_number = ?", (po_number,))
                for line_no, po in enumerate(lines, start=1):
                    conn.execute(
                        """INSERT INTO purchase_orders (
                               po_number, line_no, sku, vendor_name_raw, vendor_id,
                               program_description, quantity, value, ship_date, recorded_at
                           ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            po_number,
                            line_no,
                            po.sku,
                            po.vendor_name_raw,
                            vendor_ids.get(po_number),
                            po.program_description,
                            po.quantity,
                            po.value,
                            po.ship_date.isoformat() if po.ship_date else None,
                            now,
                        ),
                    )
                    count += 1
        return count

    def get_purchase_order_lines(self, po_number: str) -> list[IncomingPO]:
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT po_number, vendor_name_raw, sku, program_description,
                          quantity, value, ship_date
                   FROM purchase_orders WHERE po_number = ?
                   ORDER BY line_no""",
                (po_number.strip(),),
            ).fetchall()
        return [IncomingPO(**dict(r)) for r in rows]

    def list_unresolved_po_vendors(self) -> list[tuple[str, int]]:
        """Raw vendor names on recorded POs that resolved to no vendor, with PO counts."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT TRIM(vendor_name_raw) AS name, COUNT(DISTINCT po_number) AS po_count
                   FROM purchase_orders
                   WHERE vendor_id IS NULL AND TRIM(COALESCE(vendor_name_raw, '')) != ''
                   GROUP BY TRIM(vendor_name_raw)
                   ORDER BY po_count DESC, name"""
            ).fetchall()
        return [(r["name"], r["po_count"]) for r in rows]

    # ------------------------------------------------------------------
    # Import tracking
    # ------------------------------------------------------------------

    def is_imported(self, source_file: str, source_mtime: float) -> bool:
        """True if this file was already processed with the same mtime."""
        with self._conn() as conn:
            row = conn.execute(
                "SELECT source_mtime FROM import_batches WHERE source_file = ?",
                (source_file,),
            ).fetchone()
        if row is None:
            return False
        if abs(row["source_mtime"] - source_mtime) >= 0.5:
            logger.info("File mtime changed — will reprocess: %s", source_file)
            return False
        return True

    def record_import(
        self,
        source_file: str,
        kind: str,
        source_mtime: float,
        summary: Optional[dict] = None,
    ) -> None:
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO import_batches (source_file, kind, source_mtime, processed_at, summary)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(source_file) DO UPDATE SET
                       kind         = excluded.kind,
                       source_mtime = excluded.source_mtime,
                       processed_at = excluded.processed_at,
                       summary      = excluded.summary""",
                (
                    source_file,
                    kind,
                    source_mtime,
                    _utcnow(),
                    json.dumps(summary) if summary is not None else None,
                ),
            )

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def log_audit(
        self,
        entity: str,
        action: str,
        actor: str = "system",
        detail: Optional[dict] = None,
    ) -> None:
        """Append one entry to the audit log."""
        with self._conn() as conn:
            self._audit(conn, entity, action, actor, detail)

    @staticmethod
    def _audit(conn, entity: str, action: str, actor: str, detail: Optional[dict]) -> None:
        """Audit insert on an open connection, inside the caller's transaction."""
        conn.execute(
            """INSERT INTO audit_log (entity, timestamp, action, actor, detail)
               VALUES (?, ?, ?, ?, ?)""",
            (
                entity,
                _utcnow(),
                action,
                actor,
                json.dumps(detail) if detail is not None else None,
            ),
        )

    def get_audit_log(self, entity: str) -> list[dict]:
        """Return all audit entries for one entity, oldest first."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, timestamp, action, actor, detail
                   FROM audit_log WHERE entity = ?
                   ORDER BY timestamp ASC, id ASC""",
                (entity,),
            ).fetchall()
        return [dict(r) for r in rows]
