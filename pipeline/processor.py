"""
Main pipeline orchestrator.

ReconciliationProcessor wires the engine components around one
ProjectionRepository and exposes the batch entry points used by the CLI:

  1. import_vendors()       -- vendors CSV -> vendor registry
  2. import_projections()   -- projection CSV -> archive + re-import per vendor
  3. process_po_file()      -- PO CSV -> recorded PO lines -> matching in
                               bounded batches
  4. run_sweep()            -- time-windowed expiration
  5. watch_inbox()          -- continuous polling loop over 3 + 4; state is
                               persisted to SQLite so restarts are safe, no
                               PO file is processed twice unless it changed.
"""
import logging
import signal
import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from config import Config
from models.purchase_order import IncomingPO
from models.result import ExpirationResult, ImportSummary, MatchResult, UnresolvedVendor
from .archival import ArchivalService
from .collection_extractor import CollectionExtractor
from .csv_loader import load_projections, load_purchase_orders
from .database import ProjectionRepository
from .lifecycle import LifecycleManager
from .matching import MatchingEngine
from .reporting import ReportingQueries
from .vendor_resolver import VendorResolver, load_vendors_csv

logger = logging.getLogger(__name__)


class ReconciliationProcessor:
    """
    Orchestrates vendor/projection imports, PO matching and expiry sweeps.

    The clock is injectable so every component shares one notion of "now".
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or Config()
        self.config.ensure_output_dir()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.repository = ProjectionRepository(self.config.db_path)
        self.resolver = self._load_resolver()
        self.extractor = CollectionExtractor(self.config.known_collections)
        self.engine = MatchingEngine(
            self.repository,
            self.resolver,
            self.extractor,
            variance_flag_pct=self.config.variance_flag_pct,
            clock=self._clock,
        )
        self.lifecycle = LifecycleManager(
            self.repository,
            regular_window_days=self.config.regular_window_days,
            mto_window_days=self.config.mto_window_days,
            extractor=self.extractor,
            clock=self._clock,
        )
        self.archival = ArchivalService(self.repository, clock=self._clock)
        self.reporting = ReportingQueries(
            self.repository,
            clock=self._clock,
            overdue_threshold_days=self.config.overdue_threshold_days,
            variance_flag_pct=self.config.variance_flag_pct,
        )

    # ------------------------------------------------------------------
    # Vendor registry
    # ------------------------------------------------------------------

    def _load_resolver(self) -> VendorResolver:
        """Registry from the database; seeded from vendors.csv on first run."""
        if not self.repository.list_vendors() and self.config.vendors_csv.exists():
            logger.info("Vendor registry empty, seeding from %s", self.config.vendors_csv)
            for vendor in load_vendors_csv(self.config.vendors_csv):
                self.repository.upsert_vendor(vendor)
        return VendorResolver.from_repository(
            self.repository, suggest_threshold=self.config.vendor_suggest_threshold,
        )

    def import_vendors(self, csv_path: str | Path) -> int:
        """Upsert vendors (and aliases) from CSV and rebuild the resolver."""
        vendors = load_vendors_csv(csv_path)
        for vendor in vendors:
            self.repository.upsert_vendor(vendor)
        self.resolver = VendorResolver.from_repository(
            self.repository, suggest_threshold=self.config.vendor_suggest_threshold,
        )
        self.engine.resolver = self.resolver
        logger.info("Imported %d vendor(s) from %s", len(vendors), Path(csv_path).name)
        return len(vendors)

    def unresolved_vendors(self) -> list[UnresolvedVendor]:
        """Raw PO vendor names the registry could not resolve, with suggestions."""
        return [
            UnresolvedVendor(
                vendor_name_raw=name,
                po_count=count,
                suggestions=self.resolver.suggest(name),
            )
            for name, count in self.repository.list_unresolved_po_vendors()
        ]

    # ------------------------------------------------------------------
    # Projection import
    # ------------------------------------------------------------------

    def import_projections(self, csv_path: str | Path) -> ImportSummary:
        """
        Replace each vendor's projections with the rows in *csv_path*.

        Every vendor present in the file is archived then re-imported in its
        own transaction; vendors absent from the file are left untouched.
        """
        csv_path = Path(csv_path)
        rows = load_projections(csv_path, self.resolver)
        summary = ImportSummary(
            rejected_rows=rows.rejected_rows,
            unresolved_vendors=rows.unresolved_vendors,
        )
        for vendor_id, projections in rows.by_vendor.items():
            archived, ids = self.archival.reimport(vendor_id, projections)
            summary.vendors += 1
            summary.archived += archived
            summary.imported += len(ids)

        self.repository.record_import(
            str(csv_path.resolve()), "projections", csv_path.stat().st_mtime,
            summary=summary.model_dump(),
        )
        logger.info(
            "Projection import %s: %d vendor(s), %d archived, %d imported, %d rejected",
            csv_path.name, summary.vendors, summary.archived, summary.imported,
            summary.rejected_rows,
        )
        return summary

    # ------------------------------------------------------------------
    # PO matching
    # ------------------------------------------------------------------

    def match(
        self,
        pos: Iterable[IncomingPO],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> MatchResult:
        """
        Match POs in batches of config.match_batch_size.

        should_stop is checked between batches. Lines not reached are counted
        in MatchResult.deferred_count and left for the next run.
        """
        pos = list(pos)
        batch_size = max(1, self.config.match_batch_size)
        result = MatchResult()
        for start in range(0, len(pos), batch_size):
            if should_stop and should_stop():
                result.deferred_count = len(pos) - start
                logger.info("Shutdown requested, deferring %d PO line(s).", result.deferred_count)
                break
            batch = pos[start:start + batch_size]
            logger.debug("Matching batch %d-%d of %d", start + 1, start + len(batch), len(pos))
            result.merge(self.engine.match(batch))
        return result

    def process_po_file(
        self,
        csv_path: str | Path,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> MatchResult:
        """
        Record the PO lines in *csv_path*, then match them.

        The file is marked imported only once every line went through
        matching; an interrupted file is picked up again by the next scan.
        """
        csv_path = Path(csv_path)
        logger.info("PO file %s: loading", csv_path.name)
        start = time.monotonic()

        pos = load_purchase_orders(csv_path)
        vendor_ids = {po.po_number: self.resolver.resolve(po.vendor_name_raw) for po in pos}
        self.repository.record_purchase_orders(pos, vendor_ids)
        result = self.match(pos, should_stop=should_stop)

        if result.deferred_count:
            logger.warning(
                "PO file %s interrupted with %d line(s) unmatched; it will be retried",
                csv_path.name, result.deferred_count,
            )
        else:
            self.repository.record_import(
                str(csv_path.resolve()), "purchase_orders", csv_path.stat().st_mtime,
                summary={
                    "po_lines": len(pos),
                    "matched": result.matched_count,
                    "flagged": result.variance_count,
                    "skipped": len(result.skipped),
                    "errors": len(result.errors),
                },
            )
        logger.info(
            "PO file %s done in %.2fs: lines=%d matched=%d flagged=%d skipped=%d errors=%d",
            csv_path.name, time.monotonic() - start, len(pos), result.matched_count,
            result.variance_count, len(result.skipped), len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Expiration
    # ------------------------------------------------------------------

    def run_sweep(self, today: Optional[date] = None) -> ExpirationResult:
        return self.lifecycle.expire_sweep(today)

    # ------------------------------------------------------------------
    # Inbox polling
    # ------------------------------------------------------------------

    def watch_inbox(
        self,
        directory: Optional[str | Path] = None,
        interval: Optional[int] = None,
    ) -> None:
        """
        Poll *directory* for PO CSV files, match each new one, then run the
        expiration sweep, until SIGINT or SIGTERM arrives.

        Imported files are tracked by path and mtime in SQLite, so restarting
        the loop never rematches a finished file; an edited file is imported
        again.

        Args:
            directory: Inbox to poll (default: config.inbox_dir).
            interval:  Seconds between polls (default: config.poll_interval_seconds).
        """
        directory = Path(directory) if directory is not None else self.config.inbox_dir
        if not directory.is_dir():
            raise ValueError(f"Inbox is not a directory: {directory}")
        interval = self.config.poll_interval_seconds if interval is None else interval

        stopping = [False]

        def _on_signal(signum, frame):  # noqa: ANN001
            logger.info("Received signal %d; stopping after the current batch.", signum)
            stopping[0] = True

        def stop_requested() -> bool:
            return stopping[0]

        signal.signal(signal.SIGINT, _on_signal)
        signal.signal(signal.SIGTERM, _on_signal)

        logger.info("Polling %s every %ds (db=%s)", directory, interval, self.config.db_path)
        files_done = failures = 0
        try:
            while not stop_requested():
                for path in self._find_new_files(directory):
                    if stop_requested():
                        break
                    try:
                        result = self.process_po_file(path, should_stop=stop_requested)
                    except Exception as exc:
                        logger.error("PO file %s failed: %s", path.name, exc, exc_info=True)
                        failures += 1
                        continue
                    if not result.deferred_count:
                        files_done += 1

                if stop_requested():
                    break
                try:
                    self.run_sweep()
                except Exception as exc:
                    logger.error("Expiration sweep failed: %s", exc, exc_info=True)
                    failures += 1

                deadline = time.monotonic() + interval
                while not stop_requested() and time.monotonic() < deadline:
                    time.sleep(min(1.0, max(0.0, deadline - time.monotonic())))
        finally:
            logger.info("Polling stopped: %d file(s) imported, %d failure(s).", files_done, failures)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _find_new_files(self, directory: Path) -> list[Path]:
        """
        Return CSVs in *directory* that haven't been processed yet, or whose
        mtime has changed since last processing.
        """
        return [
            path for path in sorted(directory.glob("*.csv"))
            if not self.repository.is_imported(str(path.resolve()), path.stat().st_mtime)
        ]

    def check_setup(self) -> dict:
        """Verify that data files and the database are ready."""
        vendors = self.repository.list_vendors()
        return {
            "vendors_csv": {
                "path": str(self.config.vendors_csv),
                "exists": self.config.vendors_csv.exists(),
            },
            "vendor_registry": {
                "ok": bool(vendors),
                "count": len(vendors),
            },
            "inbox_dir": {
                "path": str(self.config.inbox_dir),
                "exists": self.config.inbox_dir.exists(),
            },
            "output_dir": {
                "path": str(self.config.output_dir),
                "exists": self.config.output_dir.exists(),
            },
            "database": {
                "path": str(self.config.db_path),
                "exists": self.config.db_path.exists(),
                "open_projections": len(self.repository.list_open_projections()),
            },
            "known_collections": {
                "count": len(self.extractor.known_collections),
            },
        }
