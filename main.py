#!/usr/bin/env python3
"""
Projection Reconciliation Engine — CLI entry point.

Usage examples:
  python main.py check                                  # Verify setup (data files, database)
  python main.py vendors import data/vendors.csv        # Load the vendor registry
  python main.py vendors unresolved                     # PO vendor names needing an alias
  python main.py projections import projections.csv     # Archive + re-import per vendor
  python main.py match pos.csv                          # Record and match a PO file
  python main.py sweep                                  # Expire projections past their window
  python main.py watch inbox/ --interval 60             # Poll a folder for PO files

  python main.py unmatch 42
  python main.py manual-match 42 PO-1001
  python main.py mark-removed 42 "Vendor dropped the SKU"
  python main.py restore 7 --by alice
  python main.py verify 7 cancelled --by alice --notes "Confirmed with vendor"

  python main.py report overdue --vendor-id 3
  python main.py report variance --min-pct 15
  python main.py report summary --year 2026
"""
import functools
import json
import logging
import sys
from pathlib import Path

import click

from config import Config
from models.result import ProjectionFilter
from pipeline.errors import ReconciliationError
from pipeline.processor import ReconciliationProcessor


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )


def _processor() -> ReconciliationProcessor:
    return ReconciliationProcessor(Config())


def _operator_action(fn):
    """Turn engine errors into a message and exit code 1."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (ReconciliationError, ValueError) as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    return wrapper


def _filter_options(fn):
    """Attach --vendor-id/--brand/--year/--month and pass a ProjectionFilter as `flt`."""
    @click.option("--vendor-id", type=int, default=None, help="Only this vendor")
    @click.option("--brand", default=None, help="Only this brand")
    @click.option("--year", type=int, default=None, help="Only this target year")
    @click.option("--month", type=click.IntRange(1, 12), default=None, help="Only this target month")
    @functools.wraps(fn)
    def wrapper(*args, vendor_id, brand, year, month, **kwargs):
        flt = ProjectionFilter(vendor_id=vendor_id, brand=brand, year=year, month=month)
        return fn(*args, flt=flt, **kwargs)
    return wrapper


def _echo_json(items) -> None:
    if isinstance(items, list):
        click.echo(json.dumps([i.model_dump(mode="json") for i in items], indent=2))
    else:
        click.echo(json.dumps(items.model_dump(mode="json"), indent=2))


def _describe(p) -> str:
    key = p.collection if p.order_type == "mto" else p.sku
    return f"#{p.id:<6} vendor={p.vendor_id:<5} {p.order_type:<7} {key or '-':<20} {p.year}-{p.month:02d}"


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Projection Reconciliation Engine — match POs to vendor projections."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose)


# --------------------------------------------------------------------
# check command
# --------------------------------------------------------------------

@cli.command()
def check() -> None:
    """Verify that data files and the database are ready."""
    config = Config()
    status = ReconciliationProcessor(config).check_setup()

    click.echo("\n=== Engine Setup Check ===\n")

    csv_info = status["vendors_csv"]
    tick = "✓" if csv_info["exists"] else "✗"
    click.echo(f"  vendors.csv                  {tick}  {csv_info['path']}")

    registry = status["vendor_registry"]
    tick = "✓" if registry["ok"] else "✗"
    click.echo(f"  Vendor registry              {tick}  ({registry['count']} vendors)")
    if not registry["ok"]:
        click.echo("     → Run: python main.py vendors import <vendors.csv>")

    db = status["database"]
    click.echo(f"  Database                     ✓  {db['path']} ({db['open_projections']} open projections)")

    inbox = status["inbox_dir"]
    tick = "✓" if inbox["exists"] else "✗"
    click.echo(f"  PO inbox                     {tick}  {inbox['path']}")
    click.echo(f"  Known MTO collections        {status['known_collections']['count']}")
    click.echo()


# --------------------------------------------------------------------
# vendors
# --------------------------------------------------------------------

@cli.group()
def vendors() -> None:
    """Vendor registry maintenance."""


@vendors.command("import")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
def vendors_import(csv_path: str) -> None:
    """Load vendors and aliases from CSV_PATH (id,name,vendor_code,aliases)."""
    count = _processor().import_vendors(csv_path)
    click.echo(f"Imported {count} vendor(s).")


@vendors.command("unresolved")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def vendors_unresolved(as_json: bool) -> None:
    """List PO vendor names that match no vendor, with likely candidates."""
    unresolved = _processor().unresolved_vendors()
    if as_json:
        _echo_json(unresolved)
        return
    if not unresolved:
        click.echo("✓ Every recorded PO vendor resolves.")
        return
    for u in unresolved:
        click.echo(f"  {u.vendor_name_raw!r}  ({u.po_count} PO(s))")
        for s in u.suggestions:
            click.echo(f"     → {s.vendor_name} (id {s.vendor_id}, score {s.score})")


# --------------------------------------------------------------------
# projections
# --------------------------------------------------------------------

@cli.group()
def projections() -> None:
    """Projection imports."""


@projections.command("import")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
def projections_import(csv_path: str) -> None:
    """Archive and replace each vendor's projections with the rows in CSV_PATH."""
    summary = _processor().import_projections(csv_path)
    click.echo(
        f"\n  Vendors:   {summary.vendors}\n"
        f"  Archived:  {summary.archived}\n"
        f"  Imported:  {summary.imported}\n"
        f"  Rejected:  {summary.rejected_rows}"
    )
    if summary.unresolved_vendors:
        click.echo(f"  ⚠  Unknown vendors: {', '.join(summary.unresolved_vendors)}")


# --------------------------------------------------------------------
# match / sweep / watch
# --------------------------------------------------------------------

@cli.command()
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--batch-size", type=int, default=None, help="POs per matching batch")
@click.option("--json", "as_json", is_flag=True, help="Output the full MatchResult as JSON")
def match(csv_path: str, batch_size: int | None, as_json: bool) -> None:
    """Record the PO lines in CSV_PATH and match them to open projections."""
    config = Config()
    if batch_size:
        config.match_batch_size = batch_size
    result = ReconciliationProcessor(config).process_po_file(csv_path)

    if as_json:
        _echo_json(result)
        return

    click.echo(
        f"\n  Matched:   {result.matched_count}\n"
        f"  Flagged:   {result.variance_count} (|variance| > {config.variance_flag_pct}%)\n"
        f"  Skipped:   {len(result.skipped)}\n"
        f"  Errors:    {len(result.errors)}"
    )
    for m in result.matches:
        icon = "⚠" if m.flagged else "✓"
        click.echo(f"    {icon} {m.po_number} → projection {m.projection_id} via {m.matched_via} ({m.variance_pct:+d}%)")
    for err in result.errors:
        click.echo(f"    ✗ {err}")
    for u in result.unresolved_vendors:
        hint = f" (did you mean {u.suggestions[0].vendor_name}?)" if u.suggestions else ""
        click.echo(f"    ? unknown vendor {u.vendor_name_raw!r} on {u.po_count} line(s){hint}")


@cli.command()
@click.option("--today", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Evaluate windows as of this date (default: today)")
def sweep(today) -> None:
    """Expire open projections whose order window has closed."""
    result = _processor().run_sweep(today.date() if today else None)
    click.echo(
        f"Expired {result.expired_count} projection(s) "
        f"({result.regular_expired} regular, {result.spo_expired} MTO)."
    )


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False), required=False)
@click.option(
    "--interval", "-i", default=None, type=int,
    help="Seconds between directory scans (default: POLL_INTERVAL env var or 300)",
)
def watch(directory: str | None, interval: int | None) -> None:
    """
    Watch DIRECTORY for new PO CSV files, match them, and run the expiry sweep.

    \b
    State is saved to the database so restarting is safe: a finished file is
    not processed again unless it changes, and an interrupted one is retried.
    """
    config = Config()
    if interval is not None:
        config.poll_interval_seconds = interval
    target = Path(directory) if directory else config.inbox_dir

    click.echo(
        f"\n  Watching:  {target}\n"
        f"  Interval:  every {config.poll_interval_seconds}s\n"
        f"  Database:  {config.db_path}\n"
    )
    click.echo("  Press Ctrl-C to stop.\n")

    ReconciliationProcessor(config).watch_inbox(target, interval=config.poll_interval_seconds)


# --------------------------------------------------------------------
# operator actions
# --------------------------------------------------------------------

@cli.command("mark-removed")
@click.argument("projection_id", type=int)
@click.argument("reason")
@click.option("--by", "actor", default="operator", help="Who is acting")
@_operator_action
def mark_removed(projection_id: int, reason: str, actor: str) -> None:
    """Force PROJECTION_ID to expired with REASON."""
    p = _processor().lifecycle.mark_removed(projection_id, reason, actor=actor)
    click.echo(f"✓ Projection {p.id} removed ({p.comment})")


@cli.command()
@click.argument("projection_id", type=int)
@click.option("--by", "actor", default="operator", help="Who is acting")
@_operator_action
def unmatch(projection_id: int, actor: str) -> None:
    """Revert a matched projection to unmatched."""
    p = _processor().lifecycle.unmatch(projection_id, actor=actor)
    click.echo(f"✓ Projection {p.id} is {p.match_status}")


@cli.command("manual-match")
@click.argument("projection_id", type=int)
@click.argument("po_number")
@click.option("--by", "actor", default="operator", help="Who is acting")
@_operator_action
def manual_match(projection_id: int, po_number: str, actor: str) -> None:
    """Bind recorded PO_NUMBER to PROJECTION_ID."""
    p = _processor().lifecycle.manual_match(projection_id, po_number, actor=actor)
    click.echo(
        f"✓ Projection {p.id} matched to {p.matched_po_number} "
        f"(qty {p.quantity_variance:+d}, value {p.value_variance:+d}, {p.variance_pct:+d}%)"
    )


@cli.command()
@click.argument("expired_id", type=int)
@click.option("--by", "restored_by", required=True, help="Who is restoring")
@_operator_action
def restore(expired_id: int, restored_by: str) -> None:
    """Restore expired-ledger entry EXPIRED_ID and reopen its projection."""
    entry = _processor().lifecycle.restore(expired_id, restored_by)
    click.echo(f"✓ Expired entry {entry.id} restored (projection {entry.original_projection_id})")


@cli.command()
@click.argument("expired_id", type=int)
@click.argument("status", type=click.Choice(["verified", "cancelled"]))
@click.option("--by", "verified_by", required=True, help="Who reviewed it")
@click.option("--notes", default=None, help="Review notes")
@_operator_action
def verify(expired_id: int, status: str, verified_by: str, notes: str | None) -> None:
    """Record a review outcome for expired-ledger entry EXPIRED_ID."""
    entry = _processor().lifecycle.verify(expired_id, status, verified_by, notes)
    click.echo(f"✓ Expired entry {entry.id} marked {entry.verification_status}")


@cli.command("set-order-type")
@click.argument("projection_id", type=int)
@click.argument("order_type", type=click.Choice(["regular", "mto"]))
@click.option("--by", "actor", default="operator", help="Who is acting")
@_operator_action
def set_order_type(projection_id: int, order_type: str, actor: str) -> None:
    """Reclassify PROJECTION_ID as regular or MTO."""
    p = _processor().lifecycle.set_order_type(projection_id, order_type, actor=actor)
    click.echo(f"✓ Projection {p.id} is now {p.order_type}")


# --------------------------------------------------------------------
# reports
# --------------------------------------------------------------------

@cli.group()
def report() -> None:
    """Read-only reports."""


@report.command()
@_filter_options
@click.option("--threshold", type=int, default=None, help="Days-until-due horizon")
@click.option("--json", "as_json", is_flag=True)
def overdue(flt: ProjectionFilter, threshold: int | None, as_json: bool) -> None:
    """Unmatched regular projections due soon or already past due."""
    rows = _processor().reporting.overdue(threshold, flt)
    if as_json:
        _echo_json(rows)
        return
    for p in rows:
        flag = "OVERDUE" if p.is_overdue else "at risk"
        click.echo(f"  {_describe(p)}  {p.days_until_due:>5}d  {flag}")
    click.echo(f"\n{len(rows)} projection(s).")


@report.command()
@_filter_options
@click.option("--min-pct", type=int, default=None, help="Minimum |variance_pct|")
@click.option("--json", "as_json", is_flag=True)
def variance(flt: ProjectionFilter, min_pct: int | None, as_json: bool) -> None:
    """Matched regular projections whose actuals deviate from the forecast."""
    rows = _processor().reporting.with_variance(min_pct, flt)
    if as_json:
        _echo_json(rows)
        return
    for p in rows:
        click.echo(f"  {_describe(p)}  {p.matched_po_number}  {p.variance_pct:+d}%")
    click.echo(f"\n{len(rows)} projection(s).")


@report.command()
@_filter_options
@click.option("--json", "as_json", is_flag=True)
def spo(flt: ProjectionFilter, as_json: bool) -> None:
    """All MTO (special production order) projections."""
    rows = _processor().reporting.spo(flt)
    if as_json:
        _echo_json(rows)
        return
    for p in rows:
        due = getattr(p, "days_until_due", None)
        suffix = f"  {due:>5}d" if due is not None else ""
        click.echo(f"  {_describe(p)}  {p.match_status}{suffix}")
    click.echo(f"\n{len(rows)} projection(s).")


@report.command()
@_filter_options
def summary(flt: ProjectionFilter) -> None:
    """Validation summary counts."""
    _echo_json(_processor().reporting.validation_summary(flt))


@report.command()
@_filter_options
@click.option("--status", type=click.Choice(["pending", "verified", "cancelled", "restored"]), default=None)
@click.option("--json", "as_json", is_flag=True)
def expired(flt: ProjectionFilter, status: str | None, as_json: bool) -> None:
    """Expired-projection review ledger."""
    reporting = _processor().reporting
    rows = reporting.expired(flt, status)
    if as_json:
        _echo_json(rows)
        return
    for e in rows:
        click.echo(
            f"  #{e.id:<6} projection={e.original_projection_id:<6} vendor={e.vendor_id:<5} "
            f"{e.year}-{e.month:02d}  {e.expiration_reason:<20} {e.verification_status}"
        )
    s = reporting.expired_summary()
    click.echo(
        f"\nTotal {s.total}: {s.pending} pending, {s.verified} verified, "
        f"{s.cancelled} cancelled, {s.restored} restored."
    )


@report.command()
@click.argument("vendor_id", type=int)
@click.option("--sku", default=None)
@click.option("--year", type=int, default=None)
@click.option("--json", "as_json", is_flag=True)
def history(vendor_id: int, sku: str | None, year: int | None, as_json: bool) -> None:
    """Archived projection snapshots for VENDOR_ID."""
    rows = _processor().archival.history(vendor_id, sku=sku, year=year)
    if as_json:
        _echo_json(rows)
        return
    for h in rows:
        click.echo(f"  {h.archived_at:%Y-%m-%d %H:%M}  {_describe(h)}  {h.match_status}")
    click.echo(f"\n{len(rows)} snapshot row(s).")


@report.command("filters")
def filters() -> None:
    """Vendors and brands present in the live projection set."""
    click.echo(json.dumps(_processor().reporting.filter_options(), indent=2))


if __name__ == "__main__":
    cli()
