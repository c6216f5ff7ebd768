#!/usr/bin/env python3
"""
Command-line interface for the job lifecycle orchestrator.

Operators use it to:
- Register workers and submit jobs
- Start executions and deliver signals (offer decisions, start/complete, reviews)
- Drive timers, cancel jobs and recover after a restart
- Inspect the transaction ledger and retry failed payments
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from job_orchestrator.config import OrchestratorConfig, load_config
from job_orchestrator.errors import OrchestratorError
from job_orchestrator.escrow.gateway import SandboxGateway
from job_orchestrator.models.execution import JobExecutionState
from job_orchestrator.models.job import JobUrgency
from job_orchestrator.workflows.orchestrator import JobOrchestrator

console = Console()
err_console = Console(stderr=True)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
    )


def get_config(args) -> OrchestratorConfig:
    """Config file (if any), then environment, then --data-dir."""
    config = load_config(args.config)
    if args.data_dir:
        config.data_dir = Path(args.data_dir)
    return config


def get_orchestrator(args) -> JobOrchestrator:
    config = get_config(args)
    gateway = SandboxGateway(config.data_dir / "sandbox_gateway.json")
    return JobOrchestrator(config, gateway=gateway)


def print_execution(execution: JobExecutionState) -> None:
    console.print(f"\n[bold]Job {execution.job_id}[/bold] ({execution.execution_id})")
    console.print(f"State: [cyan]{execution.state.value}[/cyan]")
    if execution.priced_amount is not None:
        console.print(f"Price: ${execution.priced_amount}")
    if execution.assigned_worker_id:
        console.print(f"Worker: {execution.assigned_worker_id}")
    if execution.pending_wait:
        wait = execution.pending_wait
        deadline = wait.deadline.isoformat() if wait.deadline else "none"
        names = ", ".join(wait.names) or "timer"
        console.print(f"Waiting on: {names} (deadline {deadline})")
    if execution.reviews_received:
        console.print(f"Reviews received: {execution.reviews_received}")
    if execution.failure_reason:
        console.print(f"[red]Failure: {escape(execution.failure_reason)}[/red]")


# ===================================================================
# Commands
# ===================================================================

def cmd_add_worker(args):
    orchestrator = get_orchestrator(args)
    worker = orchestrator.add_worker(args.name, args.rating, args.category or "")
    console.print(f"Worker ID: {worker.id}")


def cmd_add_job(args):
    orchestrator = get_orchestrator(args)
    job = orchestrator.submit_job(
        consumer_id=args.consumer,
        title=args.title,
        estimated_duration_hours=args.hours,
        urgency=JobUrgency(args.urgency),
        payment_source=args.source,
        description=args.description or "",
        category=args.category or "",
    )
    console.print(f"Job ID: {job.id}")


def cmd_start(args):
    print_execution(get_orchestrator(args).start(args.job_id))


def cmd_signal(args):
    payload = json.loads(args.payload) if args.payload else {}
    execution = get_orchestrator(args).signal(args.job_id, args.name, payload, delivery_id=args.delivery_id)
    print_execution(execution)


def cmd_cancel(args):
    execution = get_orchestrator(args).cancel(
        args.job_id, args.reason, args.requested_by, delivery_id=args.delivery_id,
    )
    print_execution(execution)


def cmd_tick(args):
    advanced = get_orchestrator(args).tick()
    if not advanced:
        console.print("No executions due.")
    for execution in advanced:
        print_execution(execution)


def cmd_status(args):
    orchestrator = get_orchestrator(args)
    if args.job_id:
        execution = orchestrator.get_execution(args.job_id)
        print_execution(execution)
        if args.history:
            for entry in execution.history:
                console.print(f"  {entry['at']}  {entry['state']}")
        return

    table = Table(title="Active executions")
    table.add_column("Job")
    table.add_column("State")
    table.add_column("Price", justify="right")
    table.add_column("Worker")
    table.add_column("Waiting on")
    for execution in orchestrator.store.list_active():
        wait = execution.pending_wait
        table.add_row(
            execution.job_id,
            execution.state.value,
            f"${execution.priced_amount}" if execution.priced_amount is not None else "-",
            execution.assigned_worker_id or "-",
            (", ".join(wait.names) or wait.key) if wait else "-",
        )
    console.print(table)


def cmd_transactions(args):
    orchestrator = get_orchestrator(args)
    records = orchestrator.escrow.transactions_for_job(args.job_id)
    if not records:
        console.print(f"No transactions for job {args.job_id}.")
        return

    table = Table(title=f"Transactions for {args.job_id}")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    table.add_column("Captured", justify="right")
    table.add_column("Refunded", justify="right")
    table.add_column("Gateway ref")
    for record in records:
        table.add_row(
            record.id,
            record.transaction_type.value,
            record.status.value,
            f"${record.amount}",
            f"${record.capture_amount}" if record.capture_amount is not None else "-",
            f"${record.refund_amount}" if record.refund_amount is not None else "-",
            record.gateway_charge_id or record.gateway_refund_id or "-",
        )
    console.print(table)

    if args.events:
        for record in records:
            for event in orchestrator.escrow.events_for_transaction(record.id):
                console.print(
                    f"  {event.created_at}  {record.id}  {event.event_type:<10} "
                    f"{event.event_status.value:<10} {event.error_message or ''}"
                )


def cmd_summary(args):
    summary = get_orchestrator(args).escrow.payment_summary(args.job_id)
    console.print_json(json.dumps(summary.to_dict()))


def cmd_reconcile(args):
    items = get_orchestrator(args).escrow.reconcile()
    if not items:
        console.print("Ledger is consistent.")
        return
    table = Table(title="Reconciliation")
    table.add_column("Key")
    table.add_column("Transaction")
    table.add_column("Operation")
    table.add_column("Action")
    for item in items:
        table.add_row(item.idempotency_key, item.transaction_id, item.operation, item.action)
    console.print(table)


def cmd_recover(args):
    items, resumed = get_orchestrator(args).recover()
    console.print(f"Reconciled {len(items)} ledger item(s); resumed {len(resumed)} execution(s).")


def cmd_retry_payment(args):
    record = get_orchestrator(args).retry_payment(args.job_id)
    console.print(f"Payment retry for {record.job_id}: {record.status.value} after {record.attempts} attempt(s)")
    if record.last_error:
        console.print(f"Last error: {record.last_error}")


def cmd_capture(args):
    record = get_orchestrator(args).capture_payment(args.job_id, args.amount, actor_id=args.actor)
    console.print(f"Captured ${record.capture_amount} on {record.id}")


def cmd_refund(args):
    record = get_orchestrator(args).refund_payment(args.job_id, args.amount, args.reason, actor_id=args.actor)
    console.print(f"Refunded ${record.amount} as {record.id} (parent {record.parent_transaction_id})")


# ===================================================================
# Parser
# ===================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobctl",
        description="Job lifecycle orchestrator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Add worker:   jobctl add-worker --name "Dana" --rating 4.8
  Add job:      jobctl add-job --consumer USR-1 --title "Fix sink" --hours 4 --source tok_visa
  Start:        jobctl start JOB-ABC123
  Accept offer: jobctl signal JOB-ABC123 offer-response --payload '{"accepted": true}'
  Review:       jobctl signal JOB-ABC123 review-submitted --payload '{"reviewer_id": "USR-1", "rating": 5}'
  Timers:       jobctl tick
        """,
    )
    parser.add_argument("--data-dir", default=os.environ.get("ORCHESTRATOR_DATA_DIR"), help="Data directory")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    p = subparsers.add_parser("add-worker", help="Register a worker")
    p.add_argument("--name", required=True)
    p.add_argument("--rating", type=float, default=0.0)
    p.add_argument("--category")
    p.set_defaults(func=cmd_add_worker)

    p = subparsers.add_parser("add-job", help="Submit a draft job")
    p.add_argument("--consumer", required=True, help="Consumer user ID")
    p.add_argument("--title", required=True)
    p.add_argument("--hours", required=True, help="Estimated duration in hours")
    p.add_argument("--urgency", default="medium", choices=[u.value for u in JobUrgency])
    p.add_argument("--source", help="Card token for payment authorization")
    p.add_argument("--description")
    p.add_argument("--category")
    p.set_defaults(func=cmd_add_job)

    p = subparsers.add_parser("start", help="Start orchestrating a job")
    p.add_argument("job_id")
    p.set_defaults(func=cmd_start)

    p = subparsers.add_parser("signal", help="Deliver a signal to a running job")
    p.add_argument("job_id")
    p.add_argument("name", help="offer-response, job-started, job-completed, review-submitted, cancel")
    p.add_argument("--payload", help="JSON payload")
    p.add_argument("--delivery-id", help="Deduplication key (defaults per signal)")
    p.set_defaults(func=cmd_signal)

    p = subparsers.add_parser("cancel", help="Cancel a running job")
    p.add_argument("job_id")
    p.add_argument("--reason", default="cancelled by administrator")
    p.add_argument("--requested-by", default="system")
    p.add_argument("--delivery-id", help="Deduplication key for a redelivered cancel")
    p.set_defaults(func=cmd_cancel)

    p = subparsers.add_parser("tick", help="Fire due timers and payment retries")
    p.set_defaults(func=cmd_tick)

    p = subparsers.add_parser("status", help="Show execution status")
    p.add_argument("job_id", nargs="?")
    p.add_argument("--history", action="store_true", help="Show state history")
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser("transactions", help="List a job's transactions")
    p.add_argument("job_id")
    p.add_argument("--events", action="store_true", help="Include payment events")
    p.set_defaults(func=cmd_transactions)

    p = subparsers.add_parser("summary", help="Payment summary for a job")
    p.add_argument("job_id")
    p.set_defaults(func=cmd_summary)

    p = subparsers.add_parser("reconcile", help="Resolve gateway calls with no recorded outcome")
    p.set_defaults(func=cmd_reconcile)

    p = subparsers.add_parser("recover", help="Reconcile the ledger and resume all executions")
    p.set_defaults(func=cmd_recover)

    p = subparsers.add_parser("retry-payment", help="Start the payment retry for a payment_failed job")
    p.add_argument("job_id")
    p.set_defaults(func=cmd_retry_payment)

    p = subparsers.add_parser("capture", help="Capture a job's authorization manually")
    p.add_argument("job_id")
    p.add_argument("--amount")
    p.add_argument("--actor", default="system")
    p.set_defaults(func=cmd_capture)

    p = subparsers.add_parser("refund", help="Refund a job's payment")
    p.add_argument("job_id")
    p.add_argument("--amount")
    p.add_argument("--reason", default="")
    p.add_argument("--actor", default="system")
    p.set_defaults(func=cmd_refund)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(args.verbose)
    try:
        args.func(args)
    except (OrchestratorError, ValidationError) as e:
        err_console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        return 1
    except json.JSONDecodeError as e:
        err_console.print(f"[bold red]Error:[/bold red] invalid --payload JSON: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
