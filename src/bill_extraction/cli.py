"""CLI entry point for bill-extraction."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from uuid import UUID

import click

from bill_extraction.adapters.imap import ImapMailbox, parse_message
from bill_extraction.classifier import AgentClassifier, HeuristicClassifier
from bill_extraction.config import ExtractionSettings, get_extraction_settings, get_imap_config
from bill_extraction.db import PostgresBillStore
from bill_extraction.errors import BillExtractionError
from bill_extraction.link_selector import AgentLinkSelector, TopCandidateLinkSelector
from bill_extraction.models import BillCategory, parse_amount
from bill_extraction.pipeline import EmailResult, ExtractionPipeline, ReviewCorrections
from bill_extraction.store import BillStore, InMemoryBillStore


def _build_pipeline(
    store: BillStore, settings: ExtractionSettings, *, no_ai: bool
) -> ExtractionPipeline:
    if no_ai:
        return ExtractionPipeline(
            store,
            HeuristicClassifier(),
            TopCandidateLinkSelector(settings),
            settings=settings,
        )
    return ExtractionPipeline(
        store,
        AgentClassifier(settings=settings),
        AgentLinkSelector(settings=settings),
        settings=settings,
    )


def _echo_result(result: EmailResult) -> None:
    if result.outcome == "error":
        click.echo(f"{result.email_id}: error: {result.error}", err=True)
    elif result.extraction is None:
        click.echo(f"{result.email_id}: {result.outcome} ({result.reason})")
    else:
        click.echo(result.extraction.model_dump_json(indent=2))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Bill extraction: find bills in your inbox."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.argument(
    "path", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option("--no-ai", is_flag=True, help="Classify from extracted candidates only.")
@click.option("--user", default="default", show_default=True)
def extract(path: Path, no_ai: bool, user: str) -> None:
    """Run one saved .eml file through the pipeline without persisting it."""
    email = parse_message(path.read_bytes())
    pipeline = _build_pipeline(InMemoryBillStore(), get_extraction_settings(), no_ai=no_ai)
    result = asyncio.run(pipeline.process_email(email, user))
    _echo_result(result)
    if result.outcome == "error":
        raise SystemExit(1)


@cli.command()
@click.option("--user", default="default", show_default=True)
@click.option("--days", default=2, show_default=True, help="How far back to fetch.")
@click.option("--no-ai", is_flag=True, help="Classify from extracted candidates only.")
def sync(user: str, days: int, no_ai: bool) -> None:
    """Fetch recent mail over IMAP and extract bills into the database."""
    store = PostgresBillStore()
    pipeline = _build_pipeline(store, get_extraction_settings(), no_ai=no_ai)
    source = ImapMailbox(get_imap_config())
    since = date.today() - timedelta(days=days)

    report = asyncio.run(pipeline.sync_mailbox(source, user, since))
    if report.status == "skipped" or report.stats is None:
        click.echo("Sync already in progress, skipped.")
        return
    stats = report.stats
    click.echo(
        f"Fetched {report.emails_fetched}, filtered {report.emails_filtered}, "
        f"processed {stats.processed}, bills created {stats.bills_created}, "
        f"needs review {stats.needs_review}, errors {stats.errors}"
    )


@cli.command()
@click.option("--user", default="default", show_default=True)
@click.option("--limit", default=50, show_default=True)
def review(user: str, limit: int) -> None:
    """List extractions waiting for review."""
    pipeline = _build_pipeline(PostgresBillStore(), get_extraction_settings(), no_ai=True)
    queue = pipeline.get_review_queue(user, limit)
    if not queue:
        click.echo("Review queue is empty.")
        return
    for item in queue:
        amount = f"${item.amount_due}" if item.amount_due is not None else "-"
        due = item.due_date.isoformat() if item.due_date else "-"
        flag = " [duplicate]" if item.is_duplicate else ""
        click.echo(
            f"{item.id}  {item.vendor_name or '?'}  {amount}  due {due}  "
            f"({item.confidence:.2f}){flag}"
        )


@cli.command()
@click.argument("extraction_id", type=click.UUID)
@click.option("--user", default="default", show_default=True)
@click.option("--name", default=None)
@click.option("--amount", default=None)
@click.option("--due-date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option(
    "--category", type=click.Choice([c.value for c in BillCategory]), default=None
)
def confirm(
    extraction_id: UUID,
    user: str,
    name: str | None,
    amount: str | None,
    due_date: datetime | None,
    category: str | None,
) -> None:
    """Accept a review item and create its bill."""
    try:
        corrections = ReviewCorrections(
            name=name,
            amount=parse_amount(amount),
            due_date=due_date.date() if due_date else None,
            category=BillCategory(category) if category else None,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    pipeline = _build_pipeline(PostgresBillStore(), get_extraction_settings(), no_ai=True)
    try:
        bill = pipeline.confirm_extraction(user, extraction_id, corrections)
    except BillExtractionError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created bill {bill.id} for {bill.name}")


@cli.command()
@click.argument("extraction_id", type=click.UUID)
@click.option("--user", default="default", show_default=True)
def reject(extraction_id: UUID, user: str) -> None:
    """Reject a review item."""
    pipeline = _build_pipeline(PostgresBillStore(), get_extraction_settings(), no_ai=True)
    try:
        pipeline.reject_extraction(user, extraction_id)
    except BillExtractionError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Rejected {extraction_id}")


@cli.command("init-db")
def init_db() -> None:
    """Create the database tables if they do not exist."""
    PostgresBillStore().create_schema()
    click.echo("Database schema is ready.")
