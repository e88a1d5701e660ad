"""Click-based CLI for HumanPass."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console

from humanpass import __version__
from humanpass.config import TIER_NAMES, HumanPassConfig, load_config

logger = logging.getLogger("humanpass")


def _read_text(input_path: str) -> str:
    """Read the text to humanize from a file, or stdin for ``-``."""
    if input_path == "-":
        text = sys.stdin.read()
    else:
        path = Path(input_path)
        if not path.is_file():
            raise click.BadParameter(f"{path} is not a file", param_hint="INPUT_PATH")
        text = path.read_text(encoding="utf-8")
    if not text.strip():
        raise click.BadParameter("input text is empty", param_hint="INPUT_PATH")
    return text


@click.group()
@click.version_option(version=__version__, prog_name="humanpass")
@click.option(
    "--profile",
    type=click.Choice(["local", "production"]),
    default=None,
    help="Deployment profile (overrides config file).",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to user config TOML file.",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Verbose output.")
@click.option("-q", "--quiet", is_flag=True, default=False, help="Suppress all output.")
@click.pass_context
def main(
    ctx: click.Context,
    profile: str | None,
    config_path: Path | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """HumanPass -- humanize text until independent AI detectors agree it passes."""
    ctx.ensure_object(dict)
    cfg = load_config(profile=profile, user_config_path=config_path)
    ctx.obj = {
        "config": cfg,
        "config_path": config_path,
        "verbose": verbose,
        "quiet": quiet,
    }

    level = logging.DEBUG if verbose else logging.WARNING
    if quiet:
        level = logging.CRITICAL
    logging.basicConfig(level=level, format="%(name)s: %(message)s", stream=sys.stderr)


@main.command()
@click.argument("input_path", default="-")
@click.option("--owner", required=True, help="Account the job is billed to.")
@click.option(
    "--tier",
    type=click.Choice(list(TIER_NAMES)),
    default="free",
    show_default=True,
    help="Subscription tier; sets the attempt budget.",
)
@click.option(
    "--output-format",
    type=click.Choice(["json", "text"]),
    default="text",
    help="Report output format.",
)
@click.option("-o", "--output", "output_path", type=click.Path(path_type=Path), default=None)
@click.option("--threshold", type=float, default=None, help="Acceptance threshold override.")
@click.pass_context
def humanize(
    ctx: click.Context,
    input_path: str,
    owner: str,
    tier: str,
    output_format: str,
    output_path: Path | None,
    threshold: float | None,
) -> None:
    """Humanize INPUT_PATH (or stdin) and validate it against the detector panel."""
    from humanpass.ledger import InsufficientCreditsError
    from humanpass.output import OutputFormatter
    from humanpass.pipeline import PipelineError, open_pipeline
    from humanpass.progress import ProgressReporter
    from humanpass.service import submit_payload

    obj = ctx.obj
    config: HumanPassConfig = obj["config"]
    if threshold is not None:
        config = load_config(
            profile=config.general.profile,
            user_config_path=obj["config_path"],
            cli_overrides={"detection.acceptance_threshold": str(threshold)},
        )
    text = _read_text(input_path)

    console = Console(stderr=True, quiet=obj["quiet"])
    reporter = ProgressReporter(console, verbose=obj["verbose"], quiet=obj["quiet"])

    async def _process():
        async with open_pipeline(config, progress_callback=reporter.callback) as orchestrator:
            job = await orchestrator.submit(owner, text, tier)
            # Job id is announced before the run so it can be cancelled meanwhile
            console.print(
                json.dumps(submit_payload(job)), markup=False, highlight=False, soft_wrap=True
            )
            reporter.start(job.max_attempts)
            return await orchestrator.run(job.id)

    try:
        job = asyncio.run(_process())
    except InsufficientCreditsError as exc:
        console.print(f"[red]{exc}[/red]")
        console.print(
            f"Purchase credits or upgrade your plan, then retry "
            f"(humanpass credits grant {owner} AMOUNT)."
        )
        ctx.exit(2)
        return
    except PipelineError as exc:
        console.print(f"[red]Job failed: {exc}[/red]")
        ctx.exit(1)
        return

    reporter.finish(job)

    formatter = OutputFormatter()
    if output_path is not None:
        formatter.write(job, output_path, output_format, config=config)
        click.echo(f"Report: {output_path}")
    elif output_format == "json":
        click.echo(formatter.format_json(job, config))
    else:
        click.echo(formatter.format_text(job))


@main.command()
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the status payload.")
@click.pass_context
def status(ctx: click.Context, job_id: str, as_json: bool) -> None:
    """Show the current state of JOB_ID."""
    from humanpass.output import OutputFormatter
    from humanpass.service import status_payload
    from humanpass.store import JobNotFoundError, open_repository

    config: HumanPassConfig = ctx.obj["config"]
    try:
        job = open_repository(config).get(job_id)
    except JobNotFoundError:
        raise click.ClickException(f"No job {job_id}") from None

    if as_json:
        click.echo(json.dumps(status_payload(job), indent=2))
    else:
        click.echo(OutputFormatter().format_text(job))


@main.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx: click.Context, job_id: str) -> None:
    """Ask the worker running JOB_ID to stop after its current attempt."""
    from humanpass.store import JobImmutableError, JobNotFoundError, open_repository

    config: HumanPassConfig = ctx.obj["config"]
    repository = open_repository(config)
    try:
        job = repository.get(job_id)
    except JobNotFoundError:
        raise click.ClickException(f"No job {job_id}") from None

    if job.status.is_terminal:
        click.echo(f"Job {job_id} already {job.status.value}")
        return
    try:
        repository.update(job_id, cancel_requested=True)
    except JobImmutableError:
        # Finished between the check and the write
        click.echo(f"Job {job_id} already {repository.get(job_id).status.value}")
        return
    click.echo(f"Cancellation requested for {job_id}")


@main.group()
def credits() -> None:
    """Inspect and top up credit balances."""


@credits.command(name="show")
@click.argument("owner")
@click.pass_context
def credits_show(ctx: click.Context, owner: str) -> None:
    """Show balance and available credits for OWNER."""
    from humanpass.pipeline import open_ledger

    ledger = open_ledger(ctx.obj["config"])
    held = sum(r.amount for r in ledger.open_reservations(owner))
    click.echo(f"Owner:     {owner}")
    click.echo(f"Balance:   {ledger.balance(owner)}")
    click.echo(f"Reserved:  {held}")
    click.echo(f"Available: {ledger.available(owner)}")


@credits.command(name="grant")
@click.argument("owner")
@click.argument("amount", type=click.IntRange(min=1))
@click.option("--reason", default="purchase", show_default=True)
@click.pass_context
def credits_grant(ctx: click.Context, owner: str, amount: int, reason: str) -> None:
    """Add AMOUNT purchased credits to OWNER."""
    from humanpass.pipeline import open_ledger

    balance = open_ledger(ctx.obj["config"]).grant(owner, amount, reason=reason)
    click.echo(f"Granted {amount} credits to {owner}; balance {balance}")


@credits.command(name="allowance")
@click.argument("owner")
@click.option("--tier", type=click.Choice(list(TIER_NAMES)), required=True)
@click.pass_context
def credits_allowance(ctx: click.Context, owner: str, tier: str) -> None:
    """Grant OWNER the monthly credit allowance of TIER."""
    from humanpass.pipeline import open_ledger

    config: HumanPassConfig = ctx.obj["config"]
    amount = config.tiers.get(tier).monthly_credits
    balance = open_ledger(config).grant(owner, amount, reason=f"{tier} monthly allowance")
    click.echo(f"Granted {amount} {tier} credits to {owner}; balance {balance}")


@main.command()
@click.argument("owner")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", type=click.IntRange(min=1, max=100), default=10, show_default=True)
@click.pass_context
def history(ctx: click.Context, owner: str, page: int, limit: int) -> None:
    """List OWNER's credit usage, newest first."""
    from humanpass.output import OutputFormatter
    from humanpass.pipeline import open_ledger

    entries = open_ledger(ctx.obj["config"]).history(owner, page=page, limit=limit)
    click.echo(OutputFormatter().format_history(entries))


@main.command()
@click.option("--resume/--no-resume", default=True, help="Resume interrupted jobs.")
@click.pass_context
def recover(ctx: click.Context, resume: bool) -> None:
    """Finish jobs left in progress by a crashed worker."""
    from humanpass.pipeline import open_pipeline

    config: HumanPassConfig = ctx.obj["config"]

    async def _recover():
        async with open_pipeline(config) as orchestrator:
            return await orchestrator.recover(resume=resume)

    jobs = asyncio.run(_recover())
    if not jobs:
        click.echo("No interrupted jobs.")
        return
    for job in jobs:
        click.echo(f"{job.id}  {job.status.value}  charged={job.credits_charged}")


@main.command(name="config")
@click.option("--set", "set_kv", nargs=2, multiple=True, help="Set KEY VALUE.")
@click.option("--profile", "show_profile", default=None, help="Show a specific profile.")
@click.pass_context
def config_cmd(
    ctx: click.Context,
    set_kv: tuple[tuple[str, str], ...],
    show_profile: str | None,
) -> None:
    """View the resolved HumanPass configuration."""
    import dataclasses

    from rich.syntax import Syntax

    obj = ctx.obj
    config: HumanPassConfig = obj["config"]
    console = Console(quiet=obj["quiet"])

    if set_kv or show_profile:
        config = load_config(
            profile=show_profile or config.general.profile,
            user_config_path=obj["config_path"],
            cli_overrides=dict(set_kv),
        )

    json_str = json.dumps(dataclasses.asdict(config), indent=2)
    console.print(Syntax(json_str, "json", theme="monokai"))
