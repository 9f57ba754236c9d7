"""CLI interface for pluqqy.

Typer-based command-line interface with Rich output formatting.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from pluqqy import __version__
from pluqqy.compose import count_tokens, format_token_count, token_limit_status
from pluqqy.exceptions import PluqqyError, ValidationError
from pluqqy.library import COMPONENT, PIPELINE, Library
from pluqqy.project import ProjectManager
from pluqqy.types import ComponentKind

__all__ = ["app"]

app = typer.Typer(
    name="pluqqy",
    help="Pluqqy: compose reusable prompt, context and rule components into pipelines.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
create_app = typer.Typer(help="Create components and pipelines.", no_args_is_help=True)
tags_app = typer.Typer(help="Manage tags and the tag registry.", no_args_is_help=True)
app.add_typer(create_app, name="create")
app.add_typer(tags_app, name="tags")

console = Console()

_STATUS_STYLES = {"good": "green", "warning": "yellow", "danger": "red"}
_LIST_FORMATS = ("table", "json", "yaml")
_SHOW_FORMATS = ("text", "json", "yaml")


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show log output"),
    ] = False,
) -> None:
    """Pluqqy command-line interface."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
            force=True,
        )


def _fail(e: PluqqyError) -> NoReturn:
    console.print(f"[red]Error:[/red] {e}")
    raise typer.Exit(code=1) from e


def _open_library() -> Library:
    try:
        return Library.discover()
    except PluqqyError:
        console.print("[yellow]No pluqqy project found.[/yellow] Run [bold]pluqqy init[/bold] first.")
        raise typer.Exit(code=1) from None


def _tag_markup(lib: Library, name: str) -> str:
    return f"[{lib.tag_color(name)}]{name}[/]"


@app.command()
def version() -> None:
    """Show pluqqy version."""
    console.print(f"pluqqy {__version__}")


@app.command()
def init() -> None:
    """Initialize a new pluqqy project in the current directory."""
    pm = ProjectManager()
    try:
        pluqqy_dir = pm.init()
    except PluqqyError as e:
        _fail(e)

    console.print(f"[green]Initialized pluqqy project[/green] at {pluqqy_dir}")
    console.print("\nNext steps:")
    console.print("  pluqqy create component contexts <name>   Add a component")
    console.print("  pluqqy create pipeline <name> <refs...>   Combine components")
    console.print("  pluqqy export <pipeline>                  Compose to Markdown")


@app.command()
def status() -> None:
    """Show project status: components, pipelines and tags."""
    pm = ProjectManager(ProjectManager.find_project_root())
    try:
        st = pm.status()
    except PluqqyError as e:
        _fail(e)

    if not st.initialized:
        console.print("[yellow]No pluqqy project found.[/yellow] Run [bold]pluqqy init[/bold] first.")
        raise typer.Exit(code=1)

    console.print(f"[bold]pluqqy project:[/bold] {st.root.name}")

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("metric", style="dim")
    table.add_column("value", style="bold")
    for kind in ComponentKind:
        archived = st.archived_components.get(kind.value, 0)
        suffix = f" ({archived} archived)" if archived else ""
        table.add_row(kind.value.capitalize(), f"{st.components.get(kind.value, 0)}{suffix}")
    suffix = f" ({st.archived_pipeline_count} archived)" if st.archived_pipeline_count else ""
    table.add_row("Pipelines", f"{st.pipeline_count}{suffix}")
    table.add_row("Tags", str(st.tag_count))
    console.print(table)

    if st.component_count == 0:
        console.print(
            "\n[dim]No components yet. Run [bold]pluqqy create component[/bold] to start.[/dim]"
        )


def _check_format(fmt: str, allowed: tuple[str, ...]) -> None:
    if fmt not in allowed:
        _fail(ValidationError(f"Unknown output format {fmt!r} (expected one of: {', '.join(allowed)})"))


def _emit(data: object, fmt: str) -> None:
    """Write ``data`` as JSON or YAML on stdout, unwrapped and unstyled."""
    if fmt == "json":
        typer.echo(json.dumps(data, indent=2, ensure_ascii=False))
    else:
        typer.echo(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), nl=False)


@app.command("list")
def list_items(
    what: Annotated[
        str,
        typer.Argument(help="all, pipelines, components, or a component type"),
    ] = "all",
    archived: Annotated[
        bool,
        typer.Option("--archived", "-a", help="List archived items instead"),
    ] = False,
    output: Annotated[
        str,
        typer.Option("--output", help="Output format (table, json, yaml)"),
    ] = "table",
) -> None:
    """List pipelines and components."""
    _check_format(output, _LIST_FORMATS)
    lib = _open_library()
    rows: list[dict[str, Any]] = []
    try:
        usage = lib.component_usage()
        if what in ("all", "pipelines"):
            for pipeline in lib.pipelines(archived):
                rows.append(
                    {
                        "type": PIPELINE,
                        "name": pipeline.name,
                        "path": pipeline.path,
                        "tags": list(pipeline.tags),
                        "archived": archived,
                        "components": len(pipeline.components),
                    }
                )
        if what != "pipelines":
            kind = None if what in ("all", "components") else what
            for component in lib.components(kind, archived):
                rows.append(
                    {
                        "type": component.kind.value if component.kind else "?",
                        "name": component.name,
                        "path": component.path,
                        "tags": list(component.tags),
                        "archived": archived,
                        "used": usage.get(component.path, 0),
                    }
                )
    except PluqqyError as e:
        _fail(e)

    if output != "table":
        _emit({"count": len(rows), "items": rows}, output)
        return
    if not rows:
        console.print("[dim]Nothing to list.[/dim]")
        return

    table = Table(title="Archived" if archived else None)
    table.add_column("Type", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Path")
    table.add_column("Tags")
    table.add_column("Used", justify="right")
    for row in rows:
        tags = " ".join(_tag_markup(lib, t) for t in row["tags"])
        table.add_row(row["type"], row["name"], row["path"], tags, str(row.get("used", "")))
    console.print(table)


@app.command()
def show(
    ref: Annotated[str, typer.Argument(help="Pipeline or component to show")],
    archived: Annotated[
        bool,
        typer.Option("--archived", "-a", help="Look in the archive"),
    ] = False,
    output: Annotated[
        str,
        typer.Option("--output", help="Output format (text, json, yaml)"),
    ] = "text",
) -> None:
    """Print a composed pipeline or a single component."""
    _check_format(output, _SHOW_FORMATS)
    lib = _open_library()
    try:
        entity = lib.resolve(ref, archived)
        if entity.entity_type == PIPELINE:
            pipeline = lib.store.read_pipeline(entity.path, entity.archived)
            composition = lib.composer().compose(pipeline)
            markdown = composition.markdown
            data: dict[str, Any] = {
                "type": PIPELINE,
                "name": pipeline.name,
                "path": pipeline.path,
                "tags": list(pipeline.tags),
                "archived": entity.archived,
                "components": [
                    {"type": r.kind, "path": r.path, "order": r.order} for r in pipeline.components
                ],
                "missing": list(composition.missing),
                "content": markdown,
            }
        else:
            component = lib.store.read_component(entity.path, entity.archived)
            markdown = lib.render_component(entity.path, entity.archived)
            data = {
                "type": component.kind.value if component.kind else "?",
                "name": component.name,
                "path": component.path,
                "tags": list(component.tags),
                "archived": entity.archived,
                "content": component.content,
            }
    except PluqqyError as e:
        _fail(e)

    if output != "text":
        _emit(data, output)
        return
    console.print(markdown, markup=False, highlight=False)


@app.command("search")
def search_items(
    query: Annotated[list[str], typer.Argument(help="Query, e.g. 'tag:api AND type:context'")],
    output: Annotated[
        str,
        typer.Option("--output", help="Output format (table, json, yaml)"),
    ] = "table",
) -> None:
    """Search components and pipelines.

    Fields: tag:, type:, name:, content:, status:active|archived, modified:<7d.
    Terms combine with AND (default), OR and NOT.
    """
    _check_format(output, _LIST_FORMATS)
    text = " ".join(query)
    lib = _open_library()
    try:
        results = lib.search(text)
    except PluqqyError as e:
        _fail(e)

    if output != "table":
        _emit({"query": text, "count": len(results), "results": [r.to_dict() for r in results]}, output)
        return
    if not results:
        console.print(f"[dim]No results for:[/dim] {escape(text)}", highlight=False)
        return

    table = Table(title=f"Search: {escape(text)}")
    table.add_column("Type", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Path")
    table.add_column("Tags")
    for result in results:
        item = result.item
        name = f"{item.name} [dim](archived)[/dim]" if item.archived else item.name
        table.add_row(item.type_label, name, item.path, " ".join(_tag_markup(lib, t) for t in item.tags))
        if result.excerpt:
            table.add_row("", f"[dim]{escape(result.excerpt)}[/dim]", "", "")
    console.print(table)
    console.print(f"[dim]{len(results)} result(s)[/dim]")


@app.command()
def export(
    pipeline: Annotated[str, typer.Argument(help="Pipeline to compose")],
    output: Annotated[
        str,
        typer.Option("--output", "-o", help="Output file (default from settings)"),
    ] = "",
) -> None:
    """Compose a pipeline and write it to a Markdown file."""
    lib = _open_library()
    try:
        composition, path = lib.export(pipeline, output or None)
    except PluqqyError as e:
        _fail(e)

    tokens = count_tokens(composition.markdown)
    percentage, limit, level = token_limit_status(tokens)
    style = _STATUS_STYLES[level]
    console.print(f"[green]Exported[/green] {composition.name} to {path}")
    console.print(
        f"  {composition.resolved} component(s), [{style}]{format_token_count(tokens)}[/{style}]"
        f" ({percentage}% of {limit})"
    )
    for missing in composition.missing:
        console.print(f"  [yellow]Missing component:[/yellow] {missing}")


@create_app.command("component")
def create_component(
    kind: Annotated[str, typer.Argument(help="contexts, prompts or rules")],
    name: Annotated[str, typer.Argument(help="Display name")],
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Tag to apply (repeatable)"),
    ] = None,
    content_file: Annotated[
        Path | None,
        typer.Option("--from", "-f", help="Read the body from this file"),
    ] = None,
) -> None:
    """Create a new component."""
    lib = _open_library()
    content = ""
    if content_file is not None:
        try:
            content = content_file.read_text(encoding="utf-8")
        except OSError as e:
            console.print(f"[red]Cannot read {content_file}:[/red] {e}")
            raise typer.Exit(code=1) from e
    try:
        path = lib.create_component(kind, name, content, tag)
    except PluqqyError as e:
        _fail(e)
    console.print(f"[green]Created component[/green] {path}")


@create_app.command("pipeline")
def create_pipeline(
    name: Annotated[str, typer.Argument(help="Display name")],
    components: Annotated[list[str], typer.Argument(help="Components, in order")],
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Tag to apply (repeatable)"),
    ] = None,
    output_path: Annotated[
        str,
        typer.Option("--output-path", help="Output file for this pipeline"),
    ] = "",
) -> None:
    """Create a new pipeline from existing components."""
    lib = _open_library()
    try:
        filename = lib.create_pipeline(name, components, tag, output_path)
    except PluqqyError as e:
        _fail(e)
    console.print(f"[green]Created pipeline[/green] {filename}")


@app.command()
def rename(
    ref: Annotated[str, typer.Argument(help="Pipeline or component to rename")],
    new_name: Annotated[str, typer.Argument(help="New display name")],
    archived: Annotated[
        bool,
        typer.Option("--archived", "-a", help="Rename an archived item"),
    ] = False,
) -> None:
    """Rename a pipeline or component, updating pipeline references."""
    lib = _open_library()
    try:
        entity = lib.resolve(ref, archived)
        new_path = lib.rename(entity, new_name)
    except PluqqyError as e:
        _fail(e)
    console.print(f"[green]Renamed[/green] {entity.path} -> {new_path}")


@app.command()
def archive(
    ref: Annotated[str, typer.Argument(help="Pipeline or component to archive")],
) -> None:
    """Move a pipeline or component to the archive."""
    lib = _open_library()
    try:
        entity = lib.resolve(ref, archived=False)
        affected = lib.affected_pipelines(entity.path) if entity.entity_type == COMPONENT else None
        swept = lib.archive(entity)
    except PluqqyError as e:
        _fail(e)
    console.print(f"[green]Archived[/green] {entity.path}")
    if affected and affected.active:
        console.print(
            f"  [yellow]Still referenced by:[/yellow] {', '.join(affected.active)}"
        )
    if swept:
        console.print(f"  [dim]Removed unused tags: {', '.join(swept)}[/dim]")


@app.command()
def restore(
    ref: Annotated[str, typer.Argument(help="Archived pipeline or component")],
) -> None:
    """Restore an archived pipeline or component."""
    lib = _open_library()
    try:
        entity = lib.resolve(ref, archived=True)
        lib.restore(entity)
    except PluqqyError as e:
        _fail(e)
    console.print(f"[green]Restored[/green] {entity.path}")


@app.command()
def delete(
    ref: Annotated[str, typer.Argument(help="Pipeline or component to delete")],
    archived: Annotated[
        bool,
        typer.Option("--archived", "-a", help="Delete an archived item"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
) -> None:
    """Delete a pipeline or component permanently."""
    lib = _open_library()
    try:
        entity = lib.resolve(ref, archived)
        if entity.entity_type == COMPONENT:
            affected = lib.affected_pipelines(entity.path)
            if affected.total:
                names = ", ".join([*affected.active, *affected.archived])
                console.print(f"[yellow]Referenced by:[/yellow] {names}")
    except PluqqyError as e:
        _fail(e)

    if not yes and not typer.confirm(f"Delete {entity.path}?"):
        raise typer.Exit(code=1)

    try:
        touched = lib.delete(entity)
    except PluqqyError as e:
        _fail(e)
    console.print(f"[green]Deleted[/green] {entity.path}")
    if touched:
        console.print(f"  [dim]Updated pipelines: {', '.join(touched)}[/dim]")


@app.command()
def usage(
    ref: Annotated[
        str,
        typer.Argument(help="Component to inspect (default: all)"),
    ] = "",
) -> None:
    """Show which pipelines use components."""
    lib = _open_library()
    try:
        if ref:
            path = lib.find_component(ref)
            affected = lib.affected_pipelines(path)
            console.print(f"[bold]{path}[/bold]")
            for name in affected.active:
                console.print(f"  {name}")
            for name in affected.archived:
                console.print(f"  {name} [dim](archived)[/dim]")
            if not affected.total:
                console.print("  [dim]Not used by any pipeline[/dim]")
            return
        counts = lib.component_usage()
        components = lib.components()
    except PluqqyError as e:
        _fail(e)

    table = Table()
    table.add_column("Component", style="bold")
    table.add_column("Pipelines", justify="right")
    for component in components:
        table.add_row(component.path, str(counts.get(component.path, 0)))
    console.print(table)


@tags_app.command("list")
def tags_list() -> None:
    """List tags with their usage."""
    lib = _open_library()
    try:
        rows = lib.tags()
    except PluqqyError as e:
        _fail(e)

    if not rows:
        console.print("[dim]No tags.[/dim]")
        return
    table = Table()
    table.add_column("Tag")
    table.add_column("Components", justify="right")
    table.add_column("Pipelines", justify="right")
    table.add_column("Description", style="dim")
    for tag, tag_usage in rows:
        table.add_row(
            _tag_markup(lib, tag.name),
            str(tag_usage.component_count),
            str(tag_usage.pipeline_count),
            tag.description,
        )
    console.print(table)


@tags_app.command("add")
def tags_add(
    name: Annotated[str, typer.Argument(help="Tag name")],
    color: Annotated[str, typer.Option("--color", "-c", help="Hex colour")] = "",
    description: Annotated[str, typer.Option("--description", "-d", help="Description")] = "",
    parent: Annotated[str, typer.Option("--parent", "-p", help="Parent tag")] = "",
) -> None:
    """Add or update a tag in the registry."""
    lib = _open_library()
    try:
        tag = lib.add_registry_tag(name, color, description, parent)
    except PluqqyError as e:
        _fail(e)
    console.print(f"[green]Saved tag[/green] {_tag_markup(lib, tag.name)}")


@tags_app.command("remove")
def tags_remove(name: Annotated[str, typer.Argument(help="Tag name")]) -> None:
    """Remove a tag from the registry (entities keep it)."""
    lib = _open_library()
    try:
        lib.remove_registry_tag(name)
    except PluqqyError as e:
        _fail(e)
    console.print(f"[green]Removed tag[/green] {name}")


@tags_app.command("rename")
def tags_rename(
    old: Annotated[str, typer.Argument(help="Current tag name")],
    new: Annotated[str, typer.Argument(help="New tag name")],
    registry_only: Annotated[
        bool,
        typer.Option("--registry-only", help="Do not rewrite components and pipelines"),
    ] = False,
) -> None:
    """Rename a tag everywhere it is used."""
    lib = _open_library()
    try:
        result = lib.rename_tag(old, new, propagate=not registry_only)
    except PluqqyError as e:
        _fail(e)
    console.print(f"[green]Renamed tag[/green] {result.old} -> {_tag_markup(lib, result.new)}")
    if result.components or result.pipelines:
        console.print(
            f"  [dim]Updated {len(result.components)} component(s), "
            f"{len(result.pipelines)} pipeline(s)[/dim]"
        )


@tags_app.command("apply")
def tags_apply(
    ref: Annotated[str, typer.Argument(help="Pipeline or component")],
    names: Annotated[list[str], typer.Argument(help="Tags to add")],
) -> None:
    """Add tags to a pipeline or component."""
    lib = _open_library()
    try:
        entity = lib.resolve(ref)
        added = [n for n in names if lib.add_tag(entity, n)]
    except PluqqyError as e:
        _fail(e)
    if added:
        console.print(f"[green]Tagged[/green] {entity.path}: {', '.join(added)}")
    else:
        console.print(f"[dim]{entity.path} already has those tags[/dim]")


@tags_app.command("strip")
def tags_strip(
    ref: Annotated[str, typer.Argument(help="Pipeline or component")],
    names: Annotated[list[str], typer.Argument(help="Tags to remove")],
) -> None:
    """Remove tags from a pipeline or component."""
    lib = _open_library()
    try:
        entity = lib.resolve(ref)
        removed = [n for n in names if lib.remove_tag(entity, n)]
    except PluqqyError as e:
        _fail(e)
    if removed:
        console.print(f"[green]Untagged[/green] {entity.path}: {', '.join(removed)}")
    else:
        console.print(f"[dim]{entity.path} has none of those tags[/dim]")
