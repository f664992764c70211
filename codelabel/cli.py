"""Command-line interface for codelabel."""

import json
import os
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager

import click
import questionary
from rich.table import Table

from . import __version__
from .config import Config, get_config_dir
from .errors import CodelabelError, safe_truncate
from .heuristics.defaults import DEFAULT_HEURISTICS
from .heuristics.store import FileConfigSource
from .logging import setup_logging
from .models import ClassificationResult, FunctionDescriptor
from .refinement.proposals import Proposal, ProposalState
from .service import CodelabelService
from .theme import confidence_style, console, format_ratio


@contextmanager
def _open_service() -> Iterator[CodelabelService]:
    service = CodelabelService(Config.load())
    try:
        yield service
    finally:
        service.close()


def _reviewer() -> str:
    return os.environ.get("USER") or "cli"


def _print_result(result: ClassificationResult, as_json: bool) -> None:
    if as_json:
        console.print_json(data=result.to_dict())
        return

    labels = ", ".join(f"[label]{label}[/label]" for label in result.labels) or "[muted]none[/muted]"
    console.print(f"\n{labels}")
    style = confidence_style(result.confidence)
    console.print(f"  Confidence: [{style}]{result.confidence:.0%}[/{style}]")
    if result.used_fallback:
        console.print(f"  Source: [fallback]fallback ({result.matched_pattern})[/fallback]")
    else:
        console.print(f"  Matched: [pattern]{', '.join(result.matched_patterns)}[/pattern]")
    if result.evidence:
        console.print(f"  Evidence: [muted]{'; '.join(result.evidence)}[/muted]")
    console.print(f"  Config: [version]{result.config_version}[/version]\n")


def _read_json(path: str) -> object:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        console.print(f"[error]{path} is not valid JSON: {e}[/error]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
@click.option("--log-file", is_flag=True, help="Also log to ~/.codelabel/logs")
def main(verbose: bool, json_logs: bool, log_file: bool):
    """codelabel - label functions and files with a hot-reloadable ruleset."""
    setup_logging(verbose=verbose, json_format=json_logs, log_to_file=log_file)


# ============================================================================
# Classification
# ============================================================================


@main.command()
@click.argument("name")
@click.option("--type", "func_type", default="function", help="Function node type")
@click.option("--file", "file_path", help="Path of the file declaring the function")
@click.option("--import", "imports", multiple=True, help="Module imported by the file (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def purpose(name: str, func_type: str, file_path: str | None, imports: tuple[str, ...], as_json: bool):
    """Classify the purpose of a function.

    Example: codelabel purpose useAuth --file web/src/hooks/auth.ts
    """
    descriptor = FunctionDescriptor(name=name, type=func_type, file_path=file_path, imports=imports)
    with _open_service() as service:
        result = service.classify_purpose(descriptor)
    _print_result(result, as_json)


@main.command()
@click.argument("name")
@click.option("--file", "file_path", help="Path of the file declaring the function")
@click.option("--import", "imports", multiple=True, help="Module imported by the file (repeatable)")
@click.option("--code", "code_file", type=click.Path(exists=True), help="File holding the function source")
@click.option("--exported", is_flag=True, help="The function is exported")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def tags(
    name: str,
    file_path: str | None,
    imports: tuple[str, ...],
    code_file: str | None,
    exported: bool,
    as_json: bool,
):
    """Infer business domains and technical patterns for a function.

    Example: codelabel tags useSession --file web/src/auth/session.ts --exported
    """
    code = ""
    if code_file:
        with open(code_file, encoding="utf-8") as f:
            code = f.read()
    descriptor = FunctionDescriptor(
        name=name, file_path=file_path, imports=imports, code=code, exported=exported
    )
    with _open_service() as service:
        domains = service.infer_business_domains(descriptor)
        patterns = service.infer_technical_patterns(descriptor)

    if as_json:
        console.print_json(data={"domains": domains, "patterns": patterns})
        return
    none = "[muted]none[/muted]"
    console.print(f"\n  Domains: {', '.join(f'[label]{d}[/label]' for d in domains) or none}")
    console.print(f"  Patterns: {', '.join(f'[pattern]{p}[/pattern]' for p in patterns) or none}\n")


@main.command()
@click.argument("path")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def bundles(path: str, as_json: bool):
    """Suggest bundles for a file path."""
    with _open_service() as service:
        result = service.suggest_bundles(path)
    _print_result(result, as_json)


@main.command()
@click.argument("target")
@click.argument("label")
@click.option("--bundle", "is_bundle", is_flag=True, help="TARGET is a file path (bundle correction)")
@click.option("--type", "func_type", default="function", help="Function node type")
@click.option("--file", "file_path", help="Path of the file declaring the function")
def correct(target: str, label: str, is_bundle: bool, func_type: str, file_path: str | None):
    """Record the label TARGET should have received.

    Example: codelabel correct fetchInvoices "Billing"
    """
    with _open_service() as service:
        if is_bundle:
            result = service.engine.suggest_bundles(target, record=False)
        else:
            descriptor = FunctionDescriptor(name=target, type=func_type, file_path=file_path)
            result = service.engine.classify_purpose(descriptor, record=False)
        record = service.record_correction(result, label)

    if not record.is_override:
        console.print(f"[muted]'{label}' matches the current verdict; recorded as confirmation.[/muted]")
        return
    console.print(
        f"[success]✓ Recorded correction for [pattern]{record.pattern_name}[/pattern]: "
        f"'{record.predicted_label}' → '{record.corrected_label}'[/success]"
    )


# ============================================================================
# Ruleset management
# ============================================================================


@main.group("config")
def config_group():
    """View, validate and change the heuristics ruleset."""
    pass


@config_group.command("show")
@click.option("--summary", is_flag=True, help="Show a pattern table instead of JSON")
def config_show(summary: bool):
    """Show the active ruleset."""
    with _open_service() as service:
        config = service.store.current
        last_error = service.store.last_error

    if not summary:
        console.print_json(data=config.to_dict())
        return

    console.print(f"\n[bold]Heuristics config[/bold] [version]{config.version}[/version]")
    if last_error is not None:
        console.print(f"[warning]Last load failed: {last_error.message}[/warning]")

    table = Table(show_header=True)
    table.add_column("Kind")
    table.add_column("Pattern")
    table.add_column("Result")
    table.add_column("Confidence")
    table.add_column("Combinator")
    for kind, patterns in (("purpose", config.purpose_patterns), ("bundle", config.bundle_patterns)):
        for top in patterns:
            for pattern in top.walk():
                table.add_row(
                    kind,
                    pattern.name,
                    pattern.result,
                    f"{pattern.confidence:.2f}",
                    pattern.combinator.value,
                )
    console.print(table)
    console.print(
        f"Purpose fallback: {config.purpose_fallback.purpose} ({config.purpose_fallback.confidence:.2f})"
    )
    for strategy in config.bundle_fallbacks:
        console.print(
            f"Bundle fallback {strategy.name}: {', '.join(strategy.bundles)} ({strategy.confidence:.2f})"
        )


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing ruleset file")
def config_init(force: bool):
    """Write the built-in ruleset to the heuristics file."""
    config = Config.load()
    path = config.store.resolved_heuristics_path()
    if path.exists() and not force:
        console.print(f"[warning]{path} already exists (use --force to overwrite)[/warning]")
        return
    FileConfigSource(path).write(DEFAULT_HEURISTICS)
    console.print(f"[success]✓ Wrote default ruleset to {path}[/success]")


@config_group.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def config_validate(path: str):
    """Check a ruleset file without applying it."""
    document = _read_json(path)
    with _open_service() as service:
        errors = service.validate_config(document)

    if errors:
        console.print(f"[error]{len(errors)} problem(s) in {path}:[/error]")
        for error in errors:
            console.print(f"  - {error}")
        sys.exit(1)
    console.print(f"[success]✓ {path} is valid[/success]")


@config_group.command("apply")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def config_apply(path: str):
    """Validate a ruleset file and make it active."""
    document = _read_json(path)
    with _open_service() as service:
        response = service.put_config(document)

    if not response["accepted"]:
        console.print("[error]Ruleset rejected:[/error]")
        for error in response["errors"]:
            console.print(f"  - {error}")
        sys.exit(1)
    console.print(f"[success]✓ Activated version [version]{response['version']}[/version][/success]")


@config_group.command("rollback")
@click.argument("version")
def config_rollback(version: str):
    """Restore an archived ruleset version."""
    with _open_service() as service:
        try:
            restored = service.rollback(version)
        except CodelabelError as e:
            console.print(f"[error]{e.message}[/error]")
            available = e.details.get("available")
            if available:
                console.print(f"  Available: {', '.join(available)}")
            sys.exit(1)
    console.print(f"[success]✓ Rolled back to [version]{restored.version}[/version][/success]")


@config_group.command("history")
def config_history():
    """List archived ruleset versions available for rollback."""
    with _open_service() as service:
        history = service.history()
        active = service.store.current.version

    console.print(f"\nActive: [version]{active}[/version]")
    if not history:
        console.print("No archived versions.")
        return

    table = Table(show_header=True)
    table.add_column("Version")
    table.add_column("Archived")
    table.add_column("Fingerprint")
    for entry in reversed(history):
        table.add_row(
            entry.config.version,
            entry.archived_at.strftime("%Y-%m-%d %H:%M"),
            entry.config.fingerprint[:12],
        )
    console.print(table)


# ============================================================================
# Metrics and refinement
# ============================================================================


@main.command()
@click.option("--days", type=int, help="Only count the last N days")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def metrics(days: int | None, as_json: bool):
    """Show per-pattern accuracy."""
    with _open_service() as service:
        data = service.get_metrics(window_days=days)

    if as_json:
        console.print_json(data=data)
        return

    overall = data["overall"]
    console.print(f"\n[bold]Accuracy[/bold] (config [version]{data['config_version']}[/version])")
    style = confidence_style(overall["accuracy"])
    console.print(
        f"  Overall: [{style}]{format_ratio(overall['accuracy'])}[/{style}] "
        f"over {overall['classifications']} classifications, {overall['corrections']} corrected"
    )
    console.print(f"  Pending proposals: {data['pending_proposals']}\n")

    if not any(data["patterns"].values()):
        console.print("No classifications recorded yet.")
        return

    table = Table(show_header=True)
    table.add_column("Kind")
    table.add_column("Pattern")
    table.add_column("Classifications", justify="right")
    table.add_column("Corrections", justify="right")
    table.add_column("Accuracy", justify="right")
    for kind, patterns in data["patterns"].items():
        for name, stats in patterns.items():
            style = confidence_style(stats["accuracy"])
            table.add_row(
                kind,
                name,
                str(stats["classifications"]),
                str(stats["corrections"]),
                f"[{style}]{format_ratio(stats['accuracy'])}[/{style}]",
            )
    console.print(table)


@main.command()
@click.option("--activity", "activity_id", help="Run only this activity")
def refine(activity_id: str | None):
    """Run refinement activities now."""
    with _open_service() as service:
        try:
            ids = [activity_id] if activity_id else [a.id for a in service.scheduler.activities]
            for aid in ids:
                proposal = service.scheduler.run_activity(aid)
                activity = service.scheduler.get_activity(aid)
                if activity.last_error:
                    console.print(f"[error]{aid}: failed ({activity.last_error})[/error]")
                elif proposal is None:
                    console.print(f"[muted]{aid}: no changes proposed[/muted]")
                else:
                    _print_proposal(proposal)
        except CodelabelError as e:
            console.print(f"[error]{e.message}[/error]")
            sys.exit(1)


def _print_proposal(proposal: Proposal) -> None:
    state = proposal.state.value
    console.print(
        f"[bold]{proposal.id[:8]}[/bold] [{state}]{state}[/{state}] "
        f"from {proposal.activity_id}: {proposal.base_version} → {proposal.candidate_version}"
    )
    console.print(f"  {proposal.rationale}")
    if proposal.error:
        console.print(f"  [error]{proposal.error}[/error]")


@main.command()
@click.option(
    "--state",
    type=click.Choice([s.value for s in ProposalState]),
    help="Only show proposals in this state",
)
def proposals(state: str | None):
    """List refinement proposals."""
    with _open_service() as service:
        items = service.proposals.list_proposals(ProposalState(state) if state else None)

    if not items:
        console.print("No proposals.")
        return

    table = Table(show_header=True)
    table.add_column("ID")
    table.add_column("Activity")
    table.add_column("Versions")
    table.add_column("State")
    table.add_column("Created")
    table.add_column("Rationale")
    for p in items:
        table.add_row(
            p.id[:8],
            p.activity_id,
            f"{p.base_version} → {p.candidate_version}",
            f"[{p.state.value}]{p.state.value}[/{p.state.value}]",
            p.created_at.strftime("%Y-%m-%d %H:%M"),
            safe_truncate(p.rationale, 60),
        )
    console.print(table)


@main.command()
@click.argument("proposal_id")
@click.option("--reviewer", default=None, help="Name recorded as approver")
def approve(proposal_id: str, reviewer: str | None):
    """Approve a proposal and commit its ruleset."""
    with _open_service() as service:
        try:
            proposal = service.proposals.approve(proposal_id, reviewer=reviewer or _reviewer())
        except CodelabelError as e:
            console.print(f"[error]Could not commit proposal: {e.message}[/error]")
            sys.exit(1)
    console.print(
        f"[success]✓ Committed {proposal.id[:8]}; active version is "
        f"[version]{proposal.candidate_version}[/version][/success]"
    )


@main.command()
@click.argument("proposal_id")
@click.option("--reason", help="Why the proposal was rejected")
@click.option("--reviewer", default=None, help="Name recorded as reviewer")
def reject(proposal_id: str, reason: str | None, reviewer: str | None):
    """Reject a proposal."""
    with _open_service() as service:
        try:
            proposal = service.proposals.reject(
                proposal_id, reviewer=reviewer or _reviewer(), reason=reason
            )
        except CodelabelError as e:
            console.print(f"[error]{e.message}[/error]")
            sys.exit(1)
    console.print(f"[success]✓ Rejected {proposal.id[:8]}[/success]")


@main.command()
def review():
    """Interactively approve or reject pending proposals."""
    with _open_service() as service:
        pending = service.proposals.pending()
        if not pending:
            console.print("[success]No proposals need review![/success]")
            return

        console.print(f"\n[bold]{len(pending)} proposal(s) need your decision:[/bold]\n")
        reviewer = _reviewer()
        for proposal in pending:
            _print_proposal(proposal)
            choice = questionary.select(
                "Decision",
                choices=["approve", "reject", "skip"],
                default="skip",
            ).ask()

            if choice is None:
                console.print("[warning]Review cancelled[/warning]")
                return
            if choice == "approve":
                try:
                    service.proposals.approve(proposal.id, reviewer=reviewer)
                    console.print(f"  [committed]→ Committed {proposal.candidate_version}[/committed]")
                except CodelabelError as e:
                    console.print(f"  [error]→ Not committed: {e.message}[/error]")
            elif choice == "reject":
                reason = questionary.text("Reason (optional)").ask()
                service.proposals.reject(proposal.id, reviewer=reviewer, reason=reason or None)
                console.print("  [rejected]→ Rejected[/rejected]")
            else:
                console.print("  [warning]→ Skipped[/warning]")
            console.print()


@main.command()
def watch():
    """Reload the ruleset on change and run refinement in the foreground."""
    with _open_service() as service:
        source = service.store.source
        console.print(f"Watching [info]{source.describe() if source else 'nothing'}[/info]")
        console.print(f"Data dir: {get_config_dir()}")
        console.print("Press Ctrl+C to stop.\n")
        service.start()
        try:
            while True:
                time.sleep(1.0)
        except KeyboardInterrupt:
            console.print("\nStopping...")


if __name__ == "__main__":
    main()
