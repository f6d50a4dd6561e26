import json
import sys
from typing import List

import click
from rich.console import Console
from rich.json import JSON
from rich.markup import escape
from rich.table import Table

from gateway_ratelimit.orchestrator import ResolutionOrchestrator, ResolutionResult, TargetResolution
from gateway_ratelimit.policy.models import RateLimitGroup
from gateway_ratelimit.status.conditions import ACCEPTED, PROGRAMMED, RecordingStatusWriter
from gateway_ratelimit.targets.snapshot import FileSnapshotProvider, SnapshotError

console = Console()


def _yes_no(value: bool) -> str:
    return "[green]yes[/green]" if value else "[red]no[/red]"


def _rules_summary(resolution: TargetResolution) -> List[str]:
    effective = resolution.effective_policy
    if effective is None:
        return ["-", "-"]

    zones, rules = [], []
    for group in (RateLimitGroup.LOCAL, RateLimitGroup.GLOBAL):
        resolved = effective.group(group)
        if resolved is None:
            continue
        zones += [f"{group.value}:{zone.name} {zone.rate}" for zone in resolved.zones]
        rules += [f"{group.value}:{rule.zone_name}" for rule in resolved.rules]
    return [escape(", ".join(zones) or "-"), escape(", ".join(rules) or "-")]


def _print_result(result: ResolutionResult) -> None:
    targets = Table(title="Targets")
    targets.add_column("Target", style="cyan")
    targets.add_column("Parent")
    targets.add_column("Accepted")
    targets.add_column("Programmed")
    targets.add_column("Zones")
    targets.add_column("Rules")
    for resolution in result.targets:
        targets.add_row(
            escape(str(resolution.target)),
            escape(str(resolution.ancestor)) if resolution.ancestor else "-",
            _yes_no(resolution.accepted),
            _yes_no(resolution.programmed),
            *_rules_summary(resolution),
        )
    console.print(targets)

    policies = Table(title="Policies")
    policies.add_column("Policy", style="cyan")
    policies.add_column("Accepted")
    policies.add_column("Programmed")
    for status in result.policies:
        cells = []
        for condition_type in (ACCEPTED, PROGRAMMED):
            condition = status.condition(condition_type)
            cells.append("-" if condition is None else f"{_yes_no(condition.status)} ({condition.reason})")
        policies.add_row(f"{status.policy.namespace}/{status.policy.name}", *cells)
    console.print(policies)

    issues = [issue for resolution in result.targets for issue in resolution.validation_errors]
    issues += [issue for status in result.policies for issue in status.issues if issue.target is None]
    issues += result.rejected
    if issues:
        console.print("[bold yellow]Issues[/bold yellow]")
        for issue in issues:
            where = f"{issue.target} " if issue.target else ""
            owner = f" ({', '.join(issue.policies)})" if issue.policies else ""
            console.print(f"- [{'red' if issue.severity == 'error' else 'yellow'}]{issue.severity.value}[/] "
                          f"{escape(where + issue.path)}: {escape(issue.message)}{escape(owner)}")


@click.command(name='resolve')
@click.argument('snapshot', type=click.Path(exists=True, dir_okay=False))
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.option('--status', 'show_status', is_flag=True, help='Also print the status updates of the pass.')
def resolve_cli(snapshot: str, json_output: bool, show_status: bool) -> None:
    """Resolves the effective rate limit policy of every target in a snapshot file."""
    try:
        loaded = FileSnapshotProvider(snapshot).snapshot()
    except SnapshotError as e:
        console.print(f"[red]Snapshot error:[/red] {escape(e.message)}")
        sys.exit(1)

    writer = RecordingStatusWriter()
    result = ResolutionOrchestrator().reconcile(loaded, writer)

    if json_output:
        data = result.model_dump(mode="json", by_alias=True, exclude_none=True)
        if show_status:
            data["status_updates"] = [u.model_dump(mode="json") for u in writer.updates]
        console.print(JSON(json.dumps(data)))
        return

    _print_result(result)

    if show_status:
        updates = Table(title="Status updates")
        updates.add_column("Object", style="cyan")
        updates.add_column("Condition")
        updates.add_column("Status")
        updates.add_column("Reason")
        updates.add_column("Generation", justify="right")
        for update in writer.updates:
            updates.add_row(escape(str(update.target)), update.condition_type, str(update.status),
                            update.reason, str(update.observed_generation))
        console.print(updates)
