from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from rich.table import Table
from rich.tree import Tree

from .build import CachedPackage
from .models import BuildReport, Outcome, PackageRecord, PackageRef, Resolution, Source

AUR_WEB = "https://aur.archlinux.org"

SOURCE_STYLES = {
    Source.INSTALLED: ("✔", "green", "installed"),
    Source.SYNC_REPO: ("📦", "blue", "repo"),
    Source.AUR: ("🔨", "yellow", "AUR"),
}


def _timestamp(value: Optional[int]) -> str:
    if value is None:
        return "[dim]N/A[/dim]"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def format_package_details(
    package: PackageRecord,
    located: Optional[Dict[str, List[Tuple[PackageRef, Optional[Source]]]]] = None,
    installed_version: Optional[str] = None,
) -> str:
    """Rich markup describing one AUR record.

    ``located`` maps a section title to its requirements annotated with where
    each would be satisfied from (None meaning nowhere).
    """
    content_parts = []

    ood_status_text = "Yes" if package.out_of_date else "No"
    ood_style_tag = "[b yellow]" if package.out_of_date else "[b green]"
    content_parts.append(
        f"[b]Votes:[/] [b cyan]{package.num_votes}[/]  "
        f"[b]Popularity:[/] [b cyan]{package.popularity:.2f}[/]  "
        f"[b]Out of Date:[/] {ood_style_tag}{ood_status_text}[/]\n\n"
    )
    content_parts.append(
        f"[b cyan]{package.name}[/] - [dim sky_blue1]{package.version}[/]\n"
        f"[italic grey50]{package.description or 'No description available.'}[/]\n\n"
    )
    if installed_version:
        content_parts.append(f"[b medium_purple]Installed:[/] [b green]{installed_version}[/]\n")
    content_parts.append(f"[b medium_purple]PackageBase:[/] {package.base}\n")
    url_display = f"[blue]{package.url}[/blue]" if package.url else "[dim]_Not specified_[/dim]"
    content_parts.append(f"[b medium_purple]Homepage :[/] {url_display}\n")
    content_parts.append(
        f"[b medium_purple]AUR Link:[/] [link]{AUR_WEB}/packages/{package.base}[/link]\n"
    )
    content_parts.append(
        f"[b medium_purple]AUR Clone Repo:[/] [link]{AUR_WEB}/{package.base}.git[/link]\n\n"
    )
    content_parts.append(
        f"[b medium_purple]Last Modified:[/] [b]{_timestamp(package.last_modified)}[/]\n"
        f"[b medium_purple]First Submitted:[/] [b]{_timestamp(package.first_submitted)}[/]\n"
        f"[b medium_purple]Maintainer:[/] [i]{package.maintainer or '[dim]None[/dim]'}[/]\n\n"
    )

    sections: List[Tuple[str, Iterable[PackageRef]]] = [
        ("Provides", sorted(package.provides, key=str)),
        ("Conflicts", sorted(package.conflicts, key=str)),
        ("Dependencies", package.depends),
        ("Make Dependencies", package.makedepends),
    ]
    has_any_list_content = False
    for title, refs in sections:
        if located and title in located:
            items = located[title]
            if not items:
                continue
            has_any_list_content = True
            content_parts.append(f"[b]{title}[/]\n")
            for ref, source in items:
                if source is None:
                    content_parts.append(f"  [dim]-[/dim] [medium_purple]{ref}[/] [b red]✗ Not Available[/]\n")
                else:
                    icon, style, label = SOURCE_STYLES[source]
                    content_parts.append(
                        f"  [dim]-[/dim] [medium_purple]{ref}[/] [{style}]{icon} {label}[/{style}]\n"
                    )
            content_parts.append("\n")
            continue
        refs = list(refs)
        if not refs:
            continue
        has_any_list_content = True
        content_parts.append(f"[b]{title}[/]\n")
        for ref in refs:
            content_parts.append(f"  [dim]-[/dim] [sky_blue1]{ref}[/sky_blue1]\n")
        content_parts.append("\n")

    if not has_any_list_content:
        content_parts.append(
            "[dim italic]_No explicit dependencies, provisions or conflicts listed._[/]\n"
        )
    return "".join(content_parts)


def plan_tree(resolution: Resolution) -> Tree:
    """Installation plan as a rich Tree, in the order it will be executed."""
    plan = resolution.plan
    tree = Tree("📦 [bold cyan]Installation Plan[/bold cyan]", guide_style="bright_black")

    if resolution.failures:
        failed = tree.add("🚨 [bold red]Could not be resolved[/bold red]")
        for name, error in resolution.failures.items():
            failed.add(f"[b]{name}[/b] [red]{error.kind}[/red]: {error.message}")

    if resolution.satisfied:
        installed_branch = tree.add("[dim]Already satisfied[/dim]")
        for pkg_name in resolution.satisfied:
            installed_branch.add(f"✔️ {pkg_name}")

    step = 1
    if plan.repo_prerequisites:
        repo_branch = tree.add(f"[bold green]Step {step}: Install from Repositories[/bold green]")
        for name in plan.repo_prerequisites:
            suffix = "" if name in plan.explicit else " [dim](as dependency)[/dim]"
            repo_branch.add(f"📦 [b]{name}[/b]{suffix}")
        step += 1

    if len(plan):
        aur_branch = tree.add(f"[bold yellow]Step {step}: Build from AUR[/bold yellow]")
        for i, record in enumerate(plan, start=1):
            display_name = f"[b]{record.name}[/b] [dim]({record.version})[/dim]"
            if record.name not in plan.explicit:
                display_name += " [dim](as dependency)[/dim]"
            node = aur_branch.add(f"🔨 {i}. {display_name}")
            requires = sorted(plan.requirements_of(record.name))
            if requires:
                node.add(f"[dim]after: {', '.join(requires)}[/dim]")
    return tree


def report_table(report: BuildReport) -> Table:
    table = Table(show_header=True, pad_edge=True, title="Build report")
    table.add_column("Package", style="bold")
    table.add_column("Outcome", no_wrap=True)
    table.add_column("Details", overflow="fold")
    styles = {Outcome.SUCCESS: "green", Outcome.FAILED: "red", Outcome.SKIPPED: "yellow"}
    for result in report:
        style = styles[result.outcome]
        if result.outcome is Outcome.FAILED:
            outcome = f"[{style}]Failed({result.error})[/{style}]"
        else:
            outcome = f"[{style}]{result.outcome}[/{style}]"
        details = str(result.artifact) if result.artifact else result.message
        table.add_row(result.name, outcome, details)
    return table


def search_table(records: Sequence[PackageRecord], installed: Dict[str, str]) -> Table:
    table = Table(show_header=True, pad_edge=True)
    table.add_column("Name", style="bold")
    table.add_column("Version", style="dim")
    table.add_column("Votes", justify="right", style="cyan")
    table.add_column("Description")
    for pkg in records:
        name = pkg.name
        if pkg.name in installed:
            name += " [green]✔[/green]"
        if pkg.out_of_date:
            name += " [yellow](out of date)[/yellow]"
        table.add_row(name, pkg.version, str(pkg.num_votes), pkg.description or "")
    return table


def cache_table(packages: Sequence[CachedPackage]) -> Table:
    table = Table(show_header=True, pad_edge=True)
    table.add_column("Name", style="bold")
    table.add_column("Version", style="dim")
    table.add_column("Arch", style="cyan", no_wrap=True)
    for package in packages:
        table.add_row(package.name, package.version, package.arch)
    return table
