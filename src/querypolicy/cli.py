"""Command-line tools for inspecting query cache policies."""

from __future__ import annotations

import json
import logging
from typing import List, Optional

import typer

from querypolicy.config import get_settings
from querypolicy.errors import QueryPolicyError
from querypolicy.policy import derive_policy, merge_policy
from querypolicy.prefetch import prefetch_policy, should_prefetch
from querypolicy.retry import RETRY_PRESETS
from querypolicy.tiers import classify

app = typer.Typer(no_args_is_help=True, help="Inspect query cache policies.")


def _parse_segment(segment: str) -> str | int:
    return int(segment) if segment.isdigit() else segment


def _key(segments: List[str]) -> tuple[str | int, ...]:
    return tuple(_parse_segment(s) for s in segments)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log policy decisions."),
) -> None:
    """Query cache policy inspection commands."""
    level = "DEBUG" if verbose else get_settings().LOG_LEVEL
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@app.command("classify")
def classify_command(
    segments: List[str] = typer.Argument(..., help="Key segments, e.g. 'payments status 42'"),
) -> None:
    """Print the cache tier for a key."""
    try:
        typer.echo(classify(_key(segments)).value)
    except QueryPolicyError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command("policy")
def policy_command(
    segments: List[str] = typer.Argument(..., help="Key segments"),
    stale_time: Optional[float] = typer.Option(None, "--stale-time", help="Override stale window (s)."),
    gc_time: Optional[float] = typer.Option(None, "--gc-time", help="Override eviction window (s)."),
    preset: str = typer.Option("generic", "--retry", help="Retry preset to attach."),
    prefetched: bool = typer.Option(False, "--prefetch", help="Show the prefetch policy instead."),
) -> None:
    """Print the merged cache policy for a key as JSON."""
    retry = RETRY_PRESETS.get(preset)
    if retry is None:
        typer.echo(f"Error: unknown retry preset '{preset}'", err=True)
        raise typer.Exit(1)

    overrides = {"stale_time": stale_time, "gc_time": gc_time, "retry": retry}
    try:
        key = _key(segments)
        tier = classify(key)
        if prefetched:
            if not should_prefetch(key):
                typer.echo("Prefetch disabled for this key", err=True)
                raise typer.Exit(2)
            base = prefetch_policy(tier, stale_time=get_settings().PREFETCH_STALE_TIME)
        else:
            base = derive_policy(tier)
        policy = merge_policy(base, overrides)
    except QueryPolicyError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    payload = {"tier": tier.value, **policy.model_dump(mode="json")}
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@app.command("backoff")
def backoff_command(
    attempts: int = typer.Option(5, "--attempts", min=1, help="Number of retries to show."),
    preset: str = typer.Option("generic", "--retry", help="Retry preset."),
) -> None:
    """Print the backoff schedule of a retry preset."""
    retry = RETRY_PRESETS.get(preset)
    if retry is None:
        typer.echo(f"Error: unknown retry preset '{preset}'", err=True)
        raise typer.Exit(1)

    for index in range(attempts):
        marker = "" if index < retry.max_attempts else " (beyond retry budget)"
        typer.echo(f"{index}: {retry.backoff_delay(index)}ms{marker}")


@app.command("prefetch")
def prefetch_command(
    segments: List[str] = typer.Argument(..., help="Key segments"),
) -> None:
    """Report whether a key may be prefetched."""
    try:
        allowed = should_prefetch(_key(segments))
    except QueryPolicyError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo("yes" if allowed else "no")


if __name__ == "__main__":
    app()
