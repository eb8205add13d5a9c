"""Category tree commands for the catalog CLI."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from rich.table import Table
from rich.tree import Tree

from catalog.entities.core import Anomaly, OrphanResolution
from catalog.hierarchy.io import (
    export_tree,
    load_nodes,
    write_consistency_report,
    write_repair_report,
    write_snapshot,
)

from .common import CLIError, console, get_state, open_manager, render_panel, resolve_path

app = typer.Typer(
    add_completion=False,
    help="Inspect, validate, repair and edit the category tree.",
    no_args_is_help=True,
)

_STORE_OPTION_HELP = "Category snapshot to operate on; defaults to <data_dir>/categories.json."


def _anomaly_table(title: str, anomalies: List[Anomaly]) -> Table:
    table = Table(title=title, box=None)
    table.add_column("Kind")
    table.add_column("Node")
    table.add_column("Expected")
    table.add_column("Actual")
    table.add_column("Repairable")
    for anomaly in anomalies:
        table.add_row(
            anomaly.kind.value,
            anomaly.node_id,
            anomaly.expected or "-",
            anomaly.actual or "-",
            "yes" if anomaly.auto_repairable else "no",
        )
    return table


def _add_branch(parent: Tree, entry: dict) -> None:
    branch = parent.add(f"{entry['name']} [dim]({entry['id']}, {entry['path']})[/dim]")
    for child in entry["children"]:
        _add_branch(branch, child)


def _show_command(
    ctx: typer.Context,
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
    root: Optional[str] = typer.Option(None, "--root", help="Only render the subtree below this node id."),
) -> None:
    manager = open_manager(get_state(ctx), store)
    roots = manager.tree(root)
    if not roots:
        console.print("[yellow]The category tree is empty.[/yellow]")
        return
    rendered = Tree("[bold]categories[/bold]")
    for entry in roots:
        _add_branch(rendered, entry)
    console.print(rendered)


def _stats_command(
    ctx: typer.Context,
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
) -> None:
    manager = open_manager(get_state(ctx), store)
    render_panel("Category Statistics", manager.statistics())


def _validate_command(
    ctx: typer.Context,
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
    report: Optional[Path] = typer.Option(None, "--report", help="Write the consistency report as JSON."),
) -> None:
    manager = open_manager(get_state(ctx), store)
    result = manager.consistency_report()
    if report is not None:
        write_consistency_report(result, resolve_path(report, must_exist=False))
    if result.passed:
        console.print(f"[green]Category tree is consistent ({result.statistics['node_count']} nodes).[/green]")
        return
    console.print(_anomaly_table("Consistency Anomalies", result.anomalies))
    raise typer.Exit(code=1)


def _repair_command(
    ctx: typer.Context,
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
    dry_run: bool = typer.Option(False, "--dry-run", help="List anomalies without rewriting anything."),
    report: Optional[Path] = typer.Option(None, "--report", help="Write the repair report as JSON."),
) -> None:
    manager = open_manager(get_state(ctx), store)
    if dry_run:
        anomalies = manager.validate_forest()
        if not anomalies:
            console.print("[green]Nothing to repair.[/green]")
            return
        console.print(_anomaly_table("Planned Repairs", anomalies))
        return
    result = manager.repair()
    if report is not None:
        write_repair_report(result, resolve_path(report, must_exist=False))
    console.print(
        f"[green]Repaired {result.repaired_count} anomalies "
        f"({len(result.rewritten_node_ids)} nodes rewritten).[/green]"
    )
    if result.unrepairable:
        console.print(_anomaly_table("Needs Operator Decision", result.unrepairable))


def _create_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name of the new category."),
    parent: Optional[str] = typer.Option(None, "--parent", "-p", help="Parent node id; omit for a root."),
    sort_order: Optional[int] = typer.Option(None, "--sort-order", help="Position among siblings."),
    node_id: Optional[str] = typer.Option(None, "--id", help="Explicit node id; generated when omitted."),
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
) -> None:
    manager = open_manager(get_state(ctx), store)
    node = manager.create(parent, name, sort_order, node_id=node_id)
    console.print(f"[green]Created {node.id} at {node.materialized_path}.[/green]")


def _rename_command(
    ctx: typer.Context,
    node_id: str = typer.Argument(..., help="Node to rename."),
    name: str = typer.Argument(..., help="New display name."),
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
) -> None:
    manager = open_manager(get_state(ctx), store)
    node = manager.rename(node_id, name)
    console.print(f"[green]Renamed {node.id}; path is now {node.materialized_path}.[/green]")


def _move_command(
    ctx: typer.Context,
    node_id: str = typer.Argument(..., help="Node to move together with its subtree."),
    parent: Optional[str] = typer.Option(None, "--parent", "-p", help="New parent id; omit to promote to a root."),
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
) -> None:
    manager = open_manager(get_state(ctx), store)
    node = manager.move(node_id, parent)
    console.print(f"[green]Moved {node.id} to {node.materialized_path}.[/green]")


def _delete_command(
    ctx: typer.Context,
    node_ids: List[str] = typer.Argument(..., help="Nodes to delete; several ids are removed all-or-nothing."),
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
) -> None:
    manager = open_manager(get_state(ctx), store)
    if len(node_ids) == 1:
        removed = [manager.delete(node_ids[0])]
    else:
        removed = manager.bulk_delete(node_ids)
    for node in removed:
        console.print(f"[green]Deleted {node.id} ({node.materialized_path}).[/green]")


def _merge_command(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Category whose children move and which is then deleted."),
    target: str = typer.Argument(..., help="Category at the same depth that receives the children."),
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
) -> None:
    manager = open_manager(get_state(ctx), store)
    node = manager.merge(source, target)
    console.print(f"[green]Merged {source} into {node.id} ({node.materialized_path}).[/green]")


def _resolve_orphan_command(
    ctx: typer.Context,
    node_id: str = typer.Argument(..., help="Orphaned node to resolve."),
    action: str = typer.Option(..., "--action", help="reparent or delete.", case_sensitive=False),
    parent: Optional[str] = typer.Option(None, "--parent", "-p", help="New parent for reparent; omit for a root."),
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
) -> None:
    try:
        resolution = OrphanResolution(action.lower())
    except ValueError as exc:
        raise CLIError("--action must be either 'reparent' or 'delete'") from exc
    manager = open_manager(get_state(ctx), store)
    node = manager.resolve_orphan(node_id, resolution, parent)
    console.print(f"[green]Resolved orphan {node.id} ({resolution.value}).[/green]")


def _load_command(
    ctx: typer.Context,
    inputs: List[Path] = typer.Argument(..., help="JSON or JSONL files containing category records."),
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
) -> None:
    state = get_state(ctx)
    nodes = load_nodes([resolve_path(item) for item in inputs])
    target = resolve_path(store or state.settings.snapshot_file, must_exist=False)
    write_snapshot(nodes, target)
    console.print(f"[green]Loaded {len(nodes)} categories into {target}.[/green]")


def _export_command(
    ctx: typer.Context,
    output: Path = typer.Argument(..., help="Destination file."),
    output_format: str = typer.Option("json", "--format", help="json or outline.", case_sensitive=False),
    store: Optional[Path] = typer.Option(None, "--store", help=_STORE_OPTION_HELP),
) -> None:
    manager = open_manager(get_state(ctx), store)
    try:
        written = export_tree(manager.tree(), resolve_path(output, must_exist=False), format=output_format)
    except ValueError as exc:
        raise CLIError(str(exc)) from exc
    console.print(f"[green]Exported category tree to {written}.[/green]")


app.command("show")(_show_command)
app.command("stats")(_stats_command)
app.command("validate")(_validate_command)
app.command("repair")(_repair_command)
app.command("create")(_create_command)
app.command("rename")(_rename_command)
app.command("move")(_move_command)
app.command("delete")(_delete_command)
app.command("merge")(_merge_command)
app.command("resolve-orphan")(_resolve_orphan_command)
app.command("load")(_load_command)
app.command("export")(_export_command)
