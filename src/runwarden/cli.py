"""runwarden CLI - typer application entry point."""

from __future__ import annotations

import asyncio
import atexit
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from runwarden.observability import close_file_logging, configure_logging

if TYPE_CHECKING:
    from runwarden.budget import BudgetCheckResult, BudgetEnforcementService, SqliteLedger
    from runwarden.config import EngineConfig
    from runwarden.phases import PhaseRunResult

# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="runwarden",
    help="runwarden: bounded, budget-governed execution of long agent tasks.",
    no_args_is_help=True,
)
budget_app = typer.Typer(help="Inspect and settle the spend ledger.", no_args_is_help=True)
app.add_typer(budget_app, name="budget")

console = Console()

DEFAULT_LOG_DIR = Path(".runwarden/logs")

# Global state set by the callback, used by commands
_config_path: Path | None = None


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log_to_file: Annotated[
        bool,
        typer.Option(
            "--log",
            help=f"Enable JSONL file logging to {DEFAULT_LOG_DIR}/events.jsonl.",
        ),
    ] = False,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Engine config file (default: ./runwarden.yaml if present).",
            envvar="RUNWARDEN_CONFIG",
        ),
    ] = None,
) -> None:
    """runwarden: bounded, budget-governed execution of long agent tasks."""
    global _config_path
    _config_path = config

    if log_to_file:
        configure_logging(verbosity=verbose, log_to_file=True, log_dir=DEFAULT_LOG_DIR)
        atexit.register(close_file_logging)
    else:
        configure_logging(verbosity=verbose)


def _load_config() -> EngineConfig:
    from runwarden.config import ConfigError, load_config

    try:
        return load_config(_config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


def _open_ledger(config: EngineConfig) -> tuple[SqliteLedger, BudgetEnforcementService]:
    from runwarden.budget import BudgetEnforcementService, SqliteLedger

    db_path = Path(config.budget.db_path)
    if str(db_path) != ":memory:":
        db_path.parent.mkdir(parents=True, exist_ok=True)
    ledger = SqliteLedger(db_path)
    service = BudgetEnforcementService(
        ledger.events, config.budget.policy_source(), ledger.alerts
    )
    return ledger, service


def _print_budget_result(result: BudgetCheckResult) -> None:
    if result.allowed:
        console.print("[green]✓[/green] Budget check passed")
    else:
        console.print("[red]✗[/red] Budget check failed")
    for v in result.violations:
        console.print(f"  [red]•[/red] [{v.level.value}] {v.message}")
    for w in result.warnings:
        console.print(f"  [yellow]•[/yellow] [{w.level.value}] {w.message}")


# =============================================================================
# CLI Commands
# =============================================================================


@app.command()
def version() -> None:
    """Show version information."""
    from runwarden import __version__

    console.print(f"runwarden v{__version__}")


@app.command()
def classify(
    text: Annotated[str, typer.Argument(help="Input text to classify.")],
    model: Annotated[
        str | None,
        typer.Option("--model", "-m", help="Primary model (provider/model) for routing."),
    ] = None,
) -> None:
    """Classify input complexity and show the routing decision."""
    from runwarden.providers.factory import parse_model_string
    from runwarden.routing import ModelSpec, classify_complexity, resolve_routing_decision

    result = classify_complexity(text)
    console.print(f"Score: [bold]{result.score:.2f}[/bold]")
    console.print(f"Level: [cyan]{result.level}[/cyan]")
    console.print(f"Needs reasoning: {'yes' if result.needs_reasoning else 'no'}")

    config = _load_config()
    if config.routing is None:
        return
    provider, name = parse_model_string(model or config.default_model)
    primary = ModelSpec(provider=provider, name=name)
    decision = resolve_routing_decision(config.routing, primary, text)
    if decision is not None:
        console.print(f"Tier: [bold]{decision.tier.value}[/bold] -> {decision.model}")
        console.print(f"[dim]{decision.reason}[/dim]")


@app.command()
def plan(
    phases_file: Annotated[Path, typer.Argument(help="Phase plan YAML file.")],
) -> None:
    """Validate a phase plan and show its parallel groups."""
    from runwarden.config import ConfigError
    from runwarden.phases import PhaseConfigError, load_phase_plan, plan_parallel_groups

    try:
        phase_plan = load_phase_plan(phases_file)
        groups = plan_parallel_groups(phase_plan.phases)
    except (ConfigError, PhaseConfigError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    table = Table(title=f"Phase Plan: {phases_file.name}")
    table.add_column("Group", style="cyan", justify="right")
    table.add_column("Phase", style="bold")
    table.add_column("Name")
    table.add_column("Depends on", style="dim")
    table.add_column("Max steps", justify="right")

    for group_no, group in enumerate(groups, start=1):
        for phase in group:
            table.add_row(
                str(group_no),
                phase.id,
                phase.name,
                ", ".join(phase.depends_on) or "-",
                str(phase.max_steps),
            )

    console.print()
    console.print(table)
    console.print(
        f"\n{len(phase_plan.phases)} phases in {len(groups)} groups "
        f"(mode: [bold]{phase_plan.execution_mode}[/bold])"
    )


def _print_phase_results(result: PhaseRunResult) -> None:
    table = Table(title="Phase Results")
    table.add_column("Phase", style="cyan")
    table.add_column("Group", justify="right")
    table.add_column("Steps", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Finish", style="bold")
    table.add_column("Abort reason", style="dim")

    for r in result.phases:
        finish = r.finish_reason
        if r.failed:
            finish = f"[red]{finish}[/red]"
        elif finish == "complete":
            finish = f"[green]{finish}[/green]"
        table.add_row(
            r.phase_id,
            str(r.parallel_group or "-"),
            str(r.total_steps),
            f"{r.total_tokens:,}",
            finish,
            r.abort_reason or "",
        )
    console.print(table)


@app.command()
def run(
    phases_file: Annotated[Path, typer.Argument(help="Phase plan YAML file.")],
    input_text: Annotated[
        str | None,
        typer.Option("--input", "-i", help="Task input (overrides the plan's input)."),
    ] = None,
    mode: Annotated[
        str | None,
        typer.Option("--mode", help="Execution mode: sequential or parallel."),
    ] = None,
    provider: Annotated[
        str | None,
        typer.Option("--provider", help="Model as provider/model (overrides config)."),
    ] = None,
    agent_id: Annotated[
        str | None, typer.Option("--agent", help="Agent ID for budget checks.")
    ] = None,
    user_id: Annotated[str | None, typer.Option("--user", help="User ID.")] = None,
    org_id: Annotated[str | None, typer.Option("--org", help="Organization ID.")] = None,
) -> None:
    """Run a phase plan against a real model under budget governance."""
    from runwarden.config import ConfigError
    from runwarden.context import AgentSpec
    from runwarden.engine import GovernedRunRequest, run_governed
    from runwarden.phases import PhaseConfigError, load_phase_plan
    from runwarden.providers import (
        GenerationError,
        LangChainCompressor,
        LangChainStepGenerator,
        create_chat_model,
        parse_model_string,
    )
    from runwarden.routing import ModelSpec

    config = _load_config()
    try:
        phase_plan = load_phase_plan(phases_file)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    execution_mode = mode or phase_plan.execution_mode
    if execution_mode not in ("sequential", "parallel"):
        console.print(f"[red]Error:[/red] Unknown mode '{execution_mode}'")
        raise typer.Exit(1)

    task_input = input_text or phase_plan.input
    if not task_input:
        console.print("[red]Error:[/red] No input. Pass --input or set 'input' in the plan.")
        raise typer.Exit(1)

    try:
        provider_name, model_name = parse_model_string(
            provider or phase_plan.model or config.default_model
        )
        chat_model = create_chat_model(provider_name, model_name)
        compressor = None
        if config.compression.enabled:
            c_provider, c_model = parse_model_string(
                config.compression.model or f"{provider_name}/{model_name}"
            )
            compressor = LangChainCompressor(create_chat_model(c_provider, c_model))
    except GenerationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    agent = AgentSpec(
        instructions=phase_plan.instructions,
        model=ModelSpec(provider=provider_name, name=model_name),
        generator=LangChainStepGenerator(
            chat_model,
            provider=provider_name,
            model_resolver=lambda spec: create_chat_model(spec.provider, spec.name),
        ),
        routing=config.routing,
        name=agent_id or phase_plan.agent_id,
    )
    request = GovernedRunRequest(
        agent=agent,
        input=task_input,
        agent_id=agent_id or phase_plan.agent_id,
        phases=phase_plan.phases,
        execution_mode=execution_mode,  # type: ignore[arg-type]
        user_id=user_id,
        organization_id=org_id,
        estimated_cost_usd=config.budget.default_estimate_usd,
        context=config.context,
        compressor=compressor,
        managed_generate_overrides={"compression_threshold": config.compression.threshold},
    )

    ledger, service = _open_ledger(config)
    try:
        console.print(f"[dim]Running {len(phase_plan.phases)} phases ({execution_mode})...[/dim]")
        result = asyncio.run(run_governed(request, service, config.budget.pricing))
    except PhaseConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    finally:
        ledger.close()

    if not result.allowed:
        _print_budget_result(result.budget)
        raise typer.Exit(2)

    from runwarden.phases import PhaseRunResult

    console.print()
    if isinstance(result.output, PhaseRunResult):
        _print_phase_results(result.output)
    console.print()
    console.print(Panel(Markdown(result.text or "(no output)"), title="Final output"))
    console.print(
        f"Tokens: {result.prompt_tokens + result.completion_tokens:,}  "
        f"Cost: ${result.cost_usd:.4f}  Run: [dim]{result.run_id}[/dim]"
    )


# =============================================================================
# Budget Commands
# =============================================================================


@budget_app.command("check")
def budget_check(
    agent_id: Annotated[str, typer.Option("--agent", help="Agent ID.")],
    user_id: Annotated[str | None, typer.Option("--user", help="User ID.")] = None,
    org_id: Annotated[str | None, typer.Option("--org", help="Organization ID.")] = None,
) -> None:
    """Run the budget hierarchy check for an agent."""
    from runwarden.budget import BudgetCheckContext

    config = _load_config()
    ledger, service = _open_ledger(config)
    try:
        result = asyncio.run(
            service.check(
                BudgetCheckContext(agent_id=agent_id, user_id=user_id, organization_id=org_id)
            )
        )
    finally:
        ledger.close()

    _print_budget_result(result)
    if not result.allowed:
        raise typer.Exit(2)


@budget_app.command("reserve")
def budget_reserve(
    agent_id: Annotated[str, typer.Option("--agent", help="Agent ID.")],
    estimate: Annotated[float, typer.Option("--estimate", help="Estimated cost in USD.")],
    run_id: Annotated[str | None, typer.Option("--run-id", help="Run ID.")] = None,
    user_id: Annotated[str | None, typer.Option("--user", help="User ID.")] = None,
    org_id: Annotated[str | None, typer.Option("--org", help="Organization ID.")] = None,
) -> None:
    """Create a cost reservation and print its ID."""
    from runwarden.observability import generate_run_id

    config = _load_config()
    ledger, service = _open_ledger(config)
    try:
        reservation_id = asyncio.run(
            service.create_reservation(
                run_id or generate_run_id(),
                agent_id,
                estimate,
                tenant_id=org_id,
                user_id=user_id,
            )
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    finally:
        ledger.close()

    console.print(reservation_id)


@budget_app.command("finalize")
def budget_finalize(
    reservation_id: Annotated[str, typer.Argument(help="Reservation ID.")],
    cost: Annotated[float, typer.Option("--cost", help="Actual cost in USD.")],
) -> None:
    """Finalize a reservation with the actual cost."""
    from runwarden.budget import ReservationNotFoundError

    config = _load_config()
    ledger, service = _open_ledger(config)
    try:
        asyncio.run(service.finalize_reservation(reservation_id, cost))
    except (ReservationNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    finally:
        ledger.close()

    console.print(f"[green]✓[/green] Finalized {reservation_id} at ${cost:.4f}")


@budget_app.command("cancel")
def budget_cancel(
    reservation_id: Annotated[str, typer.Argument(help="Reservation ID.")],
) -> None:
    """Cancel a reservation."""
    from runwarden.budget import ReservationNotFoundError

    config = _load_config()
    ledger, service = _open_ledger(config)
    try:
        asyncio.run(service.cancel_reservation(reservation_id))
    except ReservationNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    finally:
        ledger.close()

    console.print(f"[green]✓[/green] Cancelled {reservation_id}")


@budget_app.command("sweep")
def budget_sweep(
    max_age_minutes: Annotated[
        int | None,
        typer.Option(
            "--max-age-minutes",
            help="Cancel reservations older than this (default: config TTL).",
        ),
    ] = None,
) -> None:
    """Cancel stale reservations. Meant to be run periodically by a scheduler."""
    config = _load_config()
    minutes = (
        max_age_minutes if max_age_minutes is not None else config.budget.reservation_ttl_minutes
    )
    ledger, service = _open_ledger(config)
    try:
        count = asyncio.run(service.cleanup_stale_reservations(timedelta(minutes=minutes)))
    finally:
        ledger.close()

    console.print(f"Cancelled {count} stale reservation(s) older than {minutes} minutes")


if __name__ == "__main__":
    app()
