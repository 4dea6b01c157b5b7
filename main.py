#!/usr/bin/env python3
"""
CampRush Registration Engine - Main Entry Point

Usage:
    python main.py --config config/config.yaml info
    python main.py --config config/config.yaml preflight
    python main.py --config config/config.yaml run
    python main.py --config config/config.yaml status
"""
import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from camprush.common.config import load_config, Config
from camprush.common.models import AttemptStatus, PreflightStatus, WorkflowEventType
from camprush.common.notifications import NotificationManager
from camprush.common.scheduler import PrecisionScheduler, countdown_display

console = Console()


def setup_logging(level: str = "INFO", log_file: str = None):
    """Configure logging"""
    handlers = [RichHandler(console=console, rich_tracebacks=True)]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers
    )


def build_coordinator(cfg: Config):
    from camprush.browser import BrowserAutomationExecutor
    from camprush.engine import RegistrationCoordinator, create_store

    return RegistrationCoordinator(
        config=cfg,
        store=create_store(cfg.storage),
        automation=BrowserAutomationExecutor(cfg.browser),
        notifier=NotificationManager(cfg.notifications),
    )


@click.group()
@click.option("--config", "-c", default="config/config.yaml", help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, config, verbose):
    """
    CampRush Registration Engine

    Submit a camp registration the moment the window opens, and hand
    CAPTCHA, login and payment steps to a parent.
    """
    ctx.ensure_object(dict)

    try:
        cfg = load_config(config)
        ctx.obj["config"] = cfg
        setup_logging(
            level="DEBUG" if verbose else cfg.logging.level,
            log_file=cfg.logging.file
        )
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config}[/red]")
        console.print("Create a config file from config/config.example.yaml")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def info(ctx):
    """Show current configuration"""
    cfg = ctx.obj["config"]
    plan = cfg.plan

    console.print(Panel("📋 Current Configuration", style="blue"))

    table = Table(show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("User", plan.user_id)
    table.add_row("Session", plan.session_id)
    table.add_row("Open Strategy", plan.open_strategy.value)
    table.add_row("Opens At", str(plan.open_datetime) if plan.open_at else "-")
    table.add_row("Detect URL", plan.detect_url or "-")
    table.add_row("Registration URL", plan.registration_url or "-")
    table.add_row("Account Mode", plan.account_mode.value)
    table.add_row("Retries", f"{plan.retry_attempts} (base delay {plan.retry_delay_ms}ms)")
    table.add_row("Fallback", plan.fallback_strategy.value)
    table.add_row("Error Recovery", plan.error_recovery.value)
    table.add_row("Headless Mode", str(cfg.browser.headless))
    table.add_row("State Directory", cfg.storage.directory)

    console.print(table)


@cli.command()
@click.pass_context
def preflight(ctx):
    """Check the plan before arming it"""
    cfg = ctx.obj["config"]

    async def run():
        coordinator = build_coordinator(cfg)
        try:
            report = await coordinator.preflight(cfg.plan.to_plan())
        finally:
            await coordinator.close()
            await coordinator.executor.automation.stop()

        style = "green" if report.status == PreflightStatus.PASSED else "red"
        console.print(Panel(
            "\n".join(report.checks),
            title=f"Preflight: {report.status.value}",
            style=style
        ))

    asyncio.run(run())


async def assist_console(workflow):
    """Walk the parent through assistance requests on the terminal"""
    events = workflow.subscribe()
    try:
        while True:
            event = await events.get()
            if event.type != WorkflowEventType.REQUEST_STARTED:
                continue

            request = workflow.current_request
            if request is None:
                continue

            console.print(Panel(
                f"[bold yellow]⚠️  {request.type.value.replace('_', ' ').upper()} NEEDED[/bold yellow]\n\n"
                f"{request.stage}\n"
                f"Complete it in the browser window.",
                style="yellow"
            ))
            done = await asyncio.to_thread(click.confirm, "Is the step done?", default=True)
            if done:
                await workflow.complete_current({"source": "cli"})
            else:
                await workflow.fail_current("Parent could not complete the step")
    finally:
        workflow.unsubscribe(events)


@cli.command()
@click.pass_context
def run(ctx):
    """Arm the configured plan and run it"""
    cfg = ctx.obj["config"]
    plan = cfg.plan.to_plan()
    scheduler = PrecisionScheduler(plan.timezone)

    async def main():
        coordinator = build_coordinator(cfg)
        helpers = []
        try:
            opens = plan.open_at.strftime('%Y-%m-%d %H:%M:%S %Z') if plan.open_at else "when detected"
            console.print(Panel(
                f"⏰ Registration Armed\n\n"
                f"Strategy: {plan.open_strategy.value}\n"
                f"Window opens: {opens}\n\n"
                f"Press Ctrl+C to cancel",
                style="blue"
            ))

            await coordinator.arm_plan(plan)
            workflow = await coordinator.workflow_for(plan.session_id, plan.user_id)
            helpers.append(asyncio.create_task(assist_console(workflow)))
            if plan.open_at:
                helpers.append(asyncio.create_task(countdown_display(plan.open_at, scheduler)))

            record = await coordinator.wait(plan.id)
            status = coordinator.status(plan.id)
        finally:
            for task in helpers:
                task.cancel()
            await asyncio.gather(*helpers, return_exceptions=True)
            await coordinator.close()
            await coordinator.executor.automation.stop()

        if record is not None and record.status == AttemptStatus.SUCCESS:
            console.print(Panel(
                f"[bold green]🎉 SUCCESS![/bold green]\n\n"
                f"Confirmation: {record.confirmation_id or 'pending'}\n"
                f"Attempt: #{record.attempt_number}",
                style="green"
            ))
        else:
            reason = record.error_message if record else status.outcome
            console.print(Panel(
                f"[bold red]❌ Failed[/bold red]\n\n{reason or 'Unknown error'}",
                style="red"
            ))

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")


@cli.command()
@click.pass_context
def status(ctx):
    """Show the latest saved workflow checkpoint"""
    from camprush.engine import create_store

    cfg = ctx.obj["config"]
    store = create_store(cfg.storage)

    async def run():
        checkpoint = await store.load_latest_checkpoint(cfg.plan.session_id, cfg.plan.user_id)
        attempts = await store.list_attempts(cfg.plan.plan_id)
        audit = await store.list_audit(user_id=cfg.plan.user_id)
        return checkpoint, attempts, audit

    checkpoint, attempts, audit = asyncio.run(run())

    if attempts:
        table = Table(title="Attempts")
        table.add_column("#")
        table.add_column("Status")
        table.add_column("Barrier")
        table.add_column("Latency")
        table.add_column("Confirmation")
        for record in attempts:
            table.add_row(
                str(record.attempt_number),
                record.status.value,
                record.barrier.value if record.barrier else "-",
                f"{record.latency_ms:.0f}ms" if record.latency_ms is not None else "-",
                record.confirmation_id or "-",
            )
        console.print(table)

    if audit:
        table = Table(title="Audit Log")
        table.add_column("Time")
        table.add_column("Event")
        table.add_column("Summary")
        for event in audit[-10:]:
            table.add_row(f"{event.at:%Y-%m-%d %H:%M:%S}", event.event_type, event.summary)
        console.print(table)

    if checkpoint is None:
        console.print("[yellow]No workflow checkpoint saved for this session[/yellow]")
        return

    from camprush.common.models import WorkflowState
    state = WorkflowState.model_validate(checkpoint.workflow_state)

    table = Table(title=f"Assistance Requests ({checkpoint.step_name}, {checkpoint.created_at:%H:%M:%S})")
    table.add_column("Type")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Retries")
    for request in state.queue:
        table.add_row(request.type.value, request.stage, request.status.value, str(request.retry_count))
    console.print(table)
    console.print(
        f"Progress: {state.overall_progress:.0f}%  "
        f"Remaining: ~{state.estimated_time_remaining} min"
    )


if __name__ == "__main__":
    cli()
