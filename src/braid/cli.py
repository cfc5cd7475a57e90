"""CLI for braid.

Convention-based: discovers .braid/ by walking up from cwd.

Usage:
    braid init                                         # Initialize .braid/ in cwd
    braid installation add acme acme widgets --secret=...  # Register a GitHub repo
    braid installation list                            # List installations
    braid status                                       # Sync state per installation
    braid sync acme                                    # Full reconciliation pass
    braid mirror                                       # Sync the .todo/ markdown mirror
    braid watch                                        # Push local edits as they happen
    braid create "Fix the bug" --type=bug              # Create a local issue
    braid close <id>                                   # Close a local issue
    braid remove-dep <id> <dep>                        # Drop a dependency edge
    braid ready                                        # Issues with no open blockers
    braid blocked                                      # Issues waiting on blockers
    braid serve                                        # Run the webhook receiver
"""

from __future__ import annotations

import asyncio
import json as json_mod
import sys
from pathlib import Path
from typing import NoReturn

import click

from braid import __version__
from braid.core import (
    BRAID_DIR_NAME,
    DB_FILENAME,
    BraidDB,
    find_braid_root,
    read_config,
    write_config,
)
from braid.errors import BraidError, SyncFailedError


def _get_db() -> BraidDB:
    """Open the enclosing project's database, or exit with a hint to run init."""
    try:
        return BraidDB.from_project()
    except FileNotFoundError:
        click.echo(f"No {BRAID_DIR_NAME}/ found. Run 'braid init' first.", err=True)
        sys.exit(1)


def _fail(message: str, as_json: bool) -> NoReturn:
    if as_json:
        click.echo(json_mod.dumps({"error": message}))
    else:
        click.echo(f"Error: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="braid")
@click.option("--actor", default="cli", help="Actor identity for the event log (default: cli)")
@click.pass_context
def cli(ctx: click.Context, actor: str) -> None:
    """Braid: keep a local issue graph, a markdown mirror and GitHub in step."""
    ctx.ensure_object(dict)
    ctx.obj["actor"] = actor
    try:
        from braid.logging import setup_logging

        setup_logging(find_braid_root())
    except FileNotFoundError:
        pass  # Not initialized yet; init creates the directory.


@cli.command()
@click.option("--prefix", default=None, help="ID prefix for local issues (default: directory name)")
def init(prefix: str | None) -> None:
    """Initialize .braid/ in the current directory."""
    cwd = Path.cwd()
    braid_dir = cwd / BRAID_DIR_NAME

    if braid_dir.exists():
        click.echo(f"{BRAID_DIR_NAME}/ already exists in {cwd}")
        config = read_config(braid_dir)
        with BraidDB(braid_dir / DB_FILENAME, prefix=config.get("prefix", "braid")) as db:
            db.initialize()
        return

    prefix = prefix or cwd.name
    braid_dir.mkdir()
    write_config(braid_dir, {"prefix": prefix, "version": 1})
    with BraidDB(braid_dir / DB_FILENAME, prefix=prefix) as db:
        db.initialize()

    click.echo(f"Initialized {BRAID_DIR_NAME}/ in {cwd}")
    click.echo(f"  Prefix: {prefix}")
    click.echo(f"  Database: {braid_dir / DB_FILENAME}")
    click.echo("\nNext: braid installation add <id> <owner> <repo>")


# ---------------------------------------------------------------------------
# Installations
# ---------------------------------------------------------------------------


@cli.group()
def installation() -> None:
    """Manage GitHub installations."""


@installation.command("add")
@click.argument("installation_id")
@click.argument("owner")
@click.argument("repo")
@click.option("--secret", envvar="BRAID_WEBHOOK_SECRET", default="", help="Webhook secret (or $BRAID_WEBHOOK_SECRET)")
@click.option("--token", envvar="BRAID_GITHUB_TOKEN", default="", help="API token (or $BRAID_GITHUB_TOKEN)")
@click.option(
    "--strategy",
    type=click.Choice(["newest-wins", "local-wins", "remote-wins"]),
    default=None,
    help="Conflict strategy (default: from config.json)",
)
@click.option("--conventions", "conventions_file", type=click.Path(exists=True, dir_okay=False), help="JSON file of convention overrides")
@click.option("--no-create-remote", is_flag=True, help="Do not push unpaired local issues")
@click.option("--no-create-local", is_flag=True, help="Do not import unpaired remote issues")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def installation_add(
    installation_id: str,
    owner: str,
    repo: str,
    secret: str,
    token: str,
    strategy: str | None,
    conventions_file: str | None,
    no_create_remote: bool,
    no_create_local: bool,
    as_json: bool,
) -> None:
    """Register OWNER/REPO as installation INSTALLATION_ID."""
    conventions = None
    if conventions_file:
        try:
            conventions = json_mod.loads(Path(conventions_file).read_text())
        except json_mod.JSONDecodeError as e:
            _fail(f"Invalid conventions file: {e}", as_json)
    with _get_db() as db:
        if strategy is None:
            strategy = read_config(db.db_path.parent).get("conflict_strategy", "newest-wins")
        try:
            inst = db.add_installation(
                installation_id,
                owner,
                repo,
                webhook_secret=secret,
                api_token=token,
                conventions=conventions,
                conflict_strategy=strategy,
                create_remote=not no_create_remote,
                create_local=not no_create_local,
            )
        except ValueError as e:
            _fail(str(e), as_json)
        if as_json:
            click.echo(json_mod.dumps(inst.to_dict(), indent=2, default=str))
            return
        click.echo(f"Added {inst.id}: {inst.owner}/{inst.repo} ({inst.conflict_strategy})")
        if not secret:
            click.echo("Warning: no webhook secret set; every delivery will be rejected.", err=True)


@installation.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def installation_list(as_json: bool) -> None:
    """List installations."""
    with _get_db() as db:
        installations = db.list_installations()
        if as_json:
            click.echo(json_mod.dumps([i.to_dict() for i in installations], indent=2, default=str))
            return
        for inst in installations:
            click.echo(f"{inst.id}  {inst.owner}/{inst.repo}  [{inst.conflict_strategy}]")
        click.echo(f"\n{len(installations)} installation(s)")


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(as_json: bool) -> None:
    """Show sync state and pending local changes per installation."""
    with _get_db() as db:
        rows = []
        for inst in db.list_installations():
            state = db.get_sync_state(inst.id)
            pending = db.changed_since(state.last_sync_at) if state.last_sync_at else [i.id for i in db.list_all_issues()]
            rows.append((inst, state, pending))

        if as_json:
            data = [{**state.to_dict(), "pending_local_changes": pending} for _, state, pending in rows]
            click.echo(json_mod.dumps(data, indent=2, default=str))
            return
        for inst, state, pending in rows:
            click.echo(f"{inst.id} ({inst.owner}/{inst.repo}): {state.sync_status}")
            click.echo(f"  Last full sync: {state.last_sync_at or 'never'}")
            click.echo(f"  Pending local changes: {len(pending)}")
            if state.error_message:
                click.echo(f"  Last error ({state.error_count} in a row): {state.error_message}")
        if not rows:
            click.echo("No installations. Run 'braid installation add' first.")


@cli.command()
@click.argument("installation_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def sync(installation_id: str, as_json: bool) -> None:
    """Run one full reconciliation pass for INSTALLATION_ID."""
    from braid.server import SyncService

    with _get_db() as db:
        config = read_config(db.db_path.parent)
        try:
            inst = db.get_installation(installation_id)
        except KeyError:
            _fail(f"Unknown installation: {installation_id}", as_json)

        async def _run() -> dict:
            service = SyncService(db, config=config)
            try:
                result = await service.engine_for(inst).full_sync(inst)
            finally:
                await service.aclose()
            return dict(result.to_dict())

        try:
            result = asyncio.run(_run())
        except SyncFailedError as e:
            _fail(str(e), as_json)
        except Exception as e:
            _fail(f"Sync aborted: {type(e).__name__}: {e}", as_json)
        if as_json:
            click.echo(json_mod.dumps(result, indent=2, default=str))
        else:
            click.echo(
                f"{installation_id}: {len(result['created'])} created, {len(result['updated'])} updated, "
                f"{len(result['conflicts'])} conflicts, {len(result['errors'])} errors"
            )
            for err in result["errors"]:
                click.echo(f"  {err['id']}: {err['error']}", err=True)
        if result["errors"]:
            sys.exit(1)


@cli.command()
@click.option("--dir", "todo_dir", default=None, help="Mirror directory (default: todo_dir from config.json)")
@click.option(
    "--direction",
    type=click.Choice(["bidirectional", "db-to-files", "files-to-db"]),
    default="bidirectional",
    help="Which side may be written",
)
@click.option("--strategy", type=click.Choice(["newest-wins", "local-wins", "remote-wins"]), default=None, help="Conflict strategy")
@click.option("--dry-run", is_flag=True, help="Report what would change without writing")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def mirror(todo_dir: str | None, direction: str, strategy: str | None, dry_run: bool, as_json: bool) -> None:
    """Sync local issues with the markdown mirror."""
    from braid.mirror import sync_mirror

    with _get_db() as db:
        config = read_config(db.db_path.parent)
        target = Path(todo_dir) if todo_dir else db.db_path.parent.parent / config.get("todo_dir", ".todo")
        result = sync_mirror(
            db,
            target,
            strategy=strategy or config.get("conflict_strategy", "newest-wins"),
            direction=direction,
            dry_run=dry_run,
        )
    if as_json:
        click.echo(json_mod.dumps(result.to_dict(), indent=2, default=str))
        return
    prefix = "Would sync" if dry_run else "Synced"
    click.echo(
        f"{prefix} {target}: {len(result.created)} created, {len(result.updated)} updated, "
        f"{len(result.files_written)} files written, {len(result.conflicts)} conflicts"
    )
    for err in result.errors:
        click.echo(f"  {err['id']}: {err['error']}", err=True)


@cli.command()
@click.option("--interval", default=1.0, type=float, show_default=True, help="Seconds between polls")
@click.option("--no-mirror", is_flag=True, help="Do not sync the markdown mirror")
@click.option("--once", is_flag=True, help="Poll once, flush, and exit")
def watch(interval: float, no_mirror: bool, once: bool) -> None:
    """Push local edits to every installation as they happen."""
    from braid.server import SyncService
    from braid.watcher import LocalWatcher

    with _get_db() as db:
        config = read_config(db.db_path.parent)
        todo_dir = None if no_mirror else db.db_path.parent.parent / config.get("todo_dir", ".todo")

        async def _run() -> int:
            service = SyncService(db, config=config)
            watcher = LocalWatcher(
                db,
                service.engine_for,
                todo_dir=todo_dir,
                strategy=config.get("conflict_strategy", "newest-wins"),
                interval=interval,
            )
            try:
                await watcher.run(once=once)
            finally:
                await service.aclose()
            return watcher.notified

        if not once:
            click.echo(f"Watching {db.db_path.parent.parent} (Ctrl+C to stop)")
        try:
            notified = asyncio.run(_run())
        except KeyboardInterrupt:
            click.echo("Stopped.")
            return
    click.echo(f"{notified} local change(s) delivered")


@cli.command()
@click.option("--port", default=None, type=int, help="Port (default: port from config.json)")
@click.option("--host", default="127.0.0.1", help="Interface to bind")
def serve(port: int | None, host: str) -> None:
    """Run the webhook receiver."""
    from braid.server import main as server_main

    try:
        server_main(port, host=host)
    except FileNotFoundError:
        click.echo(f"No {BRAID_DIR_NAME}/ found. Run 'braid init' first.", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Local tracker
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("title")
@click.option("--type", "issue_type", default="task", help="Issue type (bug, feature, task, epic, chore)")
@click.option("--priority", "-p", default=2, type=int, help="Priority 0-4 (0=critical)")
@click.option("--parent", default=None, help="Parent issue ID")
@click.option("--body", "-d", default="", help="Description")
@click.option("--label", "-l", multiple=True, help="Labels (repeatable)")
@click.option("--assignee", "-a", multiple=True, help="Assignees (repeatable)")
@click.option("--dep", multiple=True, help="Depends on issue IDs (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def create(
    ctx: click.Context,
    title: str,
    issue_type: str,
    priority: int,
    parent: str | None,
    body: str,
    label: tuple[str, ...],
    assignee: tuple[str, ...],
    dep: tuple[str, ...],
    as_json: bool,
) -> None:
    """Create a local issue."""
    with _get_db() as db:
        try:
            issue = db.create_issue(
                title,
                type=issue_type,
                priority=priority,
                parent_id=parent,
                body=body,
                labels=list(label) or None,
                assignees=list(assignee) or None,
                deps=list(dep) or None,
                actor=ctx.obj["actor"],
            )
        except (KeyError, ValueError) as e:
            _fail(str(e), as_json)
        if as_json:
            click.echo(json_mod.dumps(issue.to_dict(), indent=2, default=str))
        else:
            click.echo(f"Created {issue.id}: {issue.title}")


@cli.command()
@click.argument("issue_id")
@click.option("--reason", default="", help="Close reason")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def close(ctx: click.Context, issue_id: str, reason: str, as_json: bool) -> None:
    """Close a local issue."""
    with _get_db() as db:
        try:
            issue = db.close_issue(issue_id, reason=reason, actor=ctx.obj["actor"])
        except KeyError:
            _fail(f"Not found: {issue_id}", as_json)
        except ValueError as e:
            _fail(str(e), as_json)
        if as_json:
            click.echo(json_mod.dumps(issue.to_dict(), indent=2, default=str))
        else:
            click.echo(f"Closed {issue.id}: {issue.title}")


@cli.command("remove-dep")
@click.argument("issue_id")
@click.argument("depends_on_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def remove_dep(ctx: click.Context, issue_id: str, depends_on_id: str, as_json: bool) -> None:
    """Remove dependency: ISSUE_ID no longer depends on DEPENDS_ON_ID (local only)."""
    with _get_db() as db:
        removed = db.remove_dependency(issue_id, depends_on_id, actor=ctx.obj["actor"])
    if as_json:
        click.echo(json_mod.dumps({"from_id": issue_id, "to_id": depends_on_id, "removed": removed}))
    elif removed:
        click.echo(f"Removed: {issue_id} no longer depends on {depends_on_id}")
    else:
        click.echo(f"No dependency found: {issue_id} -> {depends_on_id}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def ready(as_json: bool) -> None:
    """Show issues ready to work on (no open blockers)."""
    with _get_db() as db:
        issues = db.get_ready()
        if as_json:
            click.echo(json_mod.dumps([i.to_dict() for i in issues], indent=2, default=str))
            return
        for issue in issues:
            click.echo(f'P{issue.priority} {issue.id} [{issue.type}] "{issue.title}"')
        click.echo(f"\n{len(issues)} ready")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def blocked(as_json: bool) -> None:
    """Show issues waiting on open blockers."""
    with _get_db() as db:
        issues = db.get_blocked()
        if as_json:
            click.echo(json_mod.dumps([i.to_dict() for i in issues], indent=2, default=str))
            return
        for issue in issues:
            blockers = ", ".join(issue.depends_on)
            click.echo(f'P{issue.priority} {issue.id} [{issue.type}] "{issue.title}" <- {blockers}')
        click.echo(f"\n{len(issues)} blocked")


def main() -> None:
    """Entry point for the braid CLI."""
    try:
        cli()
    except BraidError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
