"""
Reconciler entry points.

    subly-recon due            periodic sweep of due subscriptions
    subly-recon activations    first-payment safety net over program history

`recon-due-subscriptions` and `recon-new-subscriptions` run the same commands
standalone. Exit code 0 when the run finished cleanly, 1 otherwise.
"""
from __future__ import annotations

import dataclasses
import logging
import sys
from typing import Any, Callable, Optional

import click

from billing_recon.core.settings import S, Settings
from billing_recon.metrics import record_run_finished, set_app_info, write_metrics
from billing_recon.models import RunReport
from billing_recon.services.activation_scan import NewActivationScanner
from billing_recon.services.due_scan import DueSubscriptionScanner
from billing_recon.services.ledger import MAX_SIGNATURES_PER_PAGE, LedgerClient
from billing_recon.services.payouts import PayoutGateway
from billing_recon.services.resolution import Resolver
from billing_recon.services.settlement import SettlementRecorder

logger = logging.getLogger("billing_recon")

APP_NAME = "subly-reconciler"
APP_VERSION = "0.1.0"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), stream=sys.stderr, format=LOG_FORMAT)


def build_settings(base: Settings = S, **overrides: Any) -> Settings:
    return dataclasses.replace(base, **{k: v for k, v in overrides.items() if v is not None})


def run_due(settings: Settings) -> RunReport:
    ledger = LedgerClient(settings)
    resolver = Resolver(PayoutGateway(settings), SettlementRecorder(ledger), path="due")
    return DueSubscriptionScanner(ledger, resolver, settings).run()


def run_activations(settings: Settings) -> RunReport:
    ledger = LedgerClient(settings)
    resolver = Resolver(PayoutGateway(settings), SettlementRecorder(ledger), path="activation")
    return NewActivationScanner(ledger, resolver, settings).run()


def execute(path: str, runner: Callable[[Settings], RunReport], settings: Settings) -> int:
    set_app_info(APP_NAME, APP_VERSION)
    report: Optional[RunReport] = None
    try:
        report = runner(settings)
    except Exception:
        logger.exception("%s run failed", path)
    finally:
        ok = report is not None and report.ok
        record_run_finished(path, ok)
        if settings.metrics_textfile:
            write_metrics(settings.metrics_textfile)

    if report is None:
        return 1

    logger.info("Run summary: %s", report.summary())
    if report.error:
        logger.error("  run stopped early: %s", report.error)
    for failure in report.failures:
        logger.error(
            "  failed: user=%s subscription=%s stage=%s error=%s",
            failure.user,
            failure.subscription_id,
            failure.stage,
            failure.error,
        )
    return 0 if report.ok else 1


fail_fast_option = click.option(
    "--fail-fast/--no-fail-fast",
    default=None,
    help="Abort the run on the first payout or settlement failure.",
)


@click.command("due")
@click.option("--look-ahead", "look_ahead", type=click.IntRange(min=0), default=None, help="Look-ahead window in seconds.")
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Accounts per due-scan call.")
@fail_fast_option
def due_command(look_ahead: Optional[int], batch_size: Optional[int], fail_fast: Optional[bool]) -> None:
    """Pay and settle every subscription due within the look-ahead window."""
    settings = build_settings(look_ahead_seconds=look_ahead, batch_size=batch_size, fail_fast=fail_fast)
    configure_logging(settings.log_level)
    sys.exit(execute("due", run_due, settings))


@click.command("activations")
@click.option("--start-slot", type=click.IntRange(min=0), default=None, help="Oldest slot to scan back to.")
@click.option("--fetch-limit", type=click.IntRange(min=1, max=MAX_SIGNATURES_PER_PAGE), default=None, help="Signatures per history page.")
@click.option("--max-tx", type=click.IntRange(min=1), default=None, help="Stop after this many activation transactions.")
@click.option("--before", "before", default=None, help="Start scanning below this transaction signature.")
@fail_fast_option
def activations_command(
    start_slot: Optional[int],
    fetch_limit: Optional[int],
    max_tx: Optional[int],
    before: Optional[str],
    fail_fast: Optional[bool],
) -> None:
    """Pay and settle the first period of newly activated subscriptions."""
    settings = build_settings(
        new_subs_start_slot=start_slot,
        new_subs_fetch_limit=fetch_limit,
        new_subs_max_tx=max_tx,
        new_subs_before_signature=before,
        fail_fast=fail_fast,
    )
    configure_logging(settings.log_level)
    sys.exit(execute("activation", run_activations, settings))


@click.group()
@click.version_option(APP_VERSION, prog_name=APP_NAME)
def cli() -> None:
    """Off-chain billing reconciliation for Subly subscriptions."""


cli.add_command(due_command)
cli.add_command(activations_command)


if __name__ == "__main__":
    cli()
