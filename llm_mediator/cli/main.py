"""
CLI interface for the LLM request mediator.

Provides command-line access to spend status, cost estimates and
one-off mediated requests.
"""

import asyncio
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from llm_mediator.config.loader import (
    MediatorConfig,
    PersistMode,
    build_spend_store,
    load_mediator_config,
)
from llm_mediator.core.errors import LLMRequestError
from llm_mediator.core.pricing import (
    PRICING_TABLE,
    FallbackMode,
    PricingResolver,
    UnknownModelError,
)
from llm_mediator.logging import setup_logging
from llm_mediator.sdk.openai_client import GuardedOpenAI
from llm_mediator.storage.models import month_key

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _load_config(config_path: Optional[str]) -> MediatorConfig:
    if config_path:
        return load_mediator_config(config_path)
    return MediatorConfig.from_env()


def _format_currency(amount: float) -> str:
    """Format currency with six decimal places of precision."""
    return f"${amount:,.6f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """LLM request mediator CLI."""
    if ctx.invoked_subcommand is None:
        console.print("LLM Mediator - Use --help to see available commands")


@app.command()
def status(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML config file (defaults to OPENAI_* environment variables)"
    )
):
    """Show this month's spend against the configured budget."""
    try:
        config = _load_config(config_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    key = month_key()
    spend = build_spend_store(config).load(key) or 0.0
    remaining = max(0.0, config.monthly_budget - spend)

    table = Table(title="Monthly Spend")
    table.add_column("Month")
    table.add_column("Spend", justify="right")
    table.add_column("Budget", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_row(
        key,
        _format_currency(spend),
        _format_currency(config.monthly_budget),
        _format_currency(remaining),
    )
    console.print(table)

    if config.budget_persist is PersistMode.MEMORY:
        console.print("[dim]Spend persistence is in-memory; set OPENAI_BUDGET_PERSIST=file to keep it.[/]")
    if spend >= config.monthly_budget:
        console.print("[bold red]Budget exceeded:[/] requests are blocked until next month")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def estimate(
    model: str = typer.Argument(..., help="Model name, e.g. gpt-4o-mini"),
    prompt_tokens: int = typer.Argument(..., min=0, help="Prompt token count"),
    completion_tokens: int = typer.Argument(..., min=0, help="Completion token count"),
    fallback: FallbackMode = typer.Option(
        FallbackMode.MINI,
        "--fallback",
        "-f",
        help="Pricing for unknown models"
    )
):
    """Estimate the USD cost of a request."""
    resolver = PricingResolver(fallback=fallback)
    try:
        cost = resolver.estimate_cost_usd(model, prompt_tokens, completion_tokens)
    except UnknownModelError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"{model}: {_format_currency(cost)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def pricing():
    """List the pricing snapshot in USD per 1K tokens."""
    table = Table(title="Pricing (USD per 1K tokens)")
    table.add_column("Model prefix")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    for prefix, entry in PRICING_TABLE.prices.items():
        table.add_row(prefix, str(entry.input_cost_per_1k), str(entry.output_cost_per_1k))
    console.print(table)


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Prompt text"),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML config file (defaults to OPENAI_* environment variables)"
    ),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override the configured model")
):
    """Send one prompt through the mediator and print the reply."""
    try:
        config = _load_config(config_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    setup_logging(config.log_level)

    try:
        guarded = GuardedOpenAI(config=config)
        response = asyncio.run(guarded.chat(prompt, model=model))
    except LLMRequestError as e:
        console.print(f"[red]{e.kind.value}:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(response.content)
    if response.usage is not None:
        console.print(
            f"[dim]{response.model} - {response.usage.prompt_tokens} prompt / "
            f"{response.usage.completion_tokens} completion tokens, "
            f"month spend {_format_currency(guarded.mediator.monthly_spend)}[/]"
        )
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
