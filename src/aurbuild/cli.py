import argparse
import importlib.metadata
import logging
import sys
from contextlib import nullcontext
from typing import List, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Confirm

from .aur import AurClient
from .build import BuildOrchestrator, cached_packages, exit_code_for, remove_cached
from .config import APP_NAME, Settings
from .db import PackageDB
from .errors import AurBuildError, ExitCode, PackageDatabaseError
from .formatters import (
    cache_table,
    format_package_details,
    plan_tree,
    report_table,
    search_table,
)
from .models import Resolution
from .resolver import DependencyResolver
from .version import vercmp

LOGGER = logging.getLogger(__name__)
PAGER_ENABLE = 40  # how many results before using PAGER


def _version() -> str:
    try:
        return importlib.metadata.version(APP_NAME)
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                show_path=verbose,
                rich_tracebacks=True,
            )
        ],
        force=True,
    )
    # request-level chatter from httpx is only useful when debugging
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _open_db(settings: Settings, noconfirm: bool = False) -> PackageDB:
    return PackageDB.from_settings(settings, noconfirm=noconfirm)


def _open_aur(settings: Settings) -> AurClient:
    return AurClient.from_settings(settings)


def _orchestrator(db: PackageDB, settings: Settings) -> BuildOrchestrator:
    return BuildOrchestrator.from_settings(db, settings)


# ---- commands ---- #


def cmd_search(args, settings: Settings, console: Console) -> int:
    with _open_aur(settings) as aur:
        results = aur.search(args.query, by=args.by)
    if not results:
        console.print(f"[yellow]No AUR packages match '{args.query}'.[/yellow]")
        return ExitCode.SUCCESS

    try:
        installed = _open_db(settings).installed_packages()
    except PackageDatabaseError as e:
        LOGGER.warning(f"Installed state unavailable: {e.message}")
        installed = {}

    results.sort(key=lambda r: (-r.popularity, r.name))
    if args.limit > 0:
        results = results[: args.limit]
    output_func = console.pager if len(results) > PAGER_ENABLE else nullcontext
    with output_func():
        console.print(f"[b]'{args.query}'[/b]: Found {len(results)} packages.")
        console.print(search_table(results, installed))
    return ExitCode.SUCCESS


def cmd_info(args, settings: Settings, console: Console) -> int:
    try:
        db: Optional[PackageDB] = _open_db(settings)
    except PackageDatabaseError as e:
        # --deps cannot locate anything without the pacman database
        if args.deps:
            raise
        LOGGER.warning(f"Installed state unavailable: {e.message}")
        db = None
    with _open_aur(settings) as aur:
        package = aur.get(args.package)
        if package is None:
            console.print(f"Package '{args.package}' not found in the AUR.")
            return ExitCode.ERROR
        located = None
        if args.deps:
            resolver = DependencyResolver(db, aur)
            located = {
                "Dependencies": [(ref, resolver.locate(ref)) for ref in package.depends],
                "Make Dependencies": [(ref, resolver.locate(ref)) for ref in package.makedepends],
            }
    installed_version = db.installed_version(package.name) if db else None
    console.print(format_package_details(package, located, installed_version=installed_version))
    return ExitCode.SUCCESS


def _execute(
    resolution: Resolution, args, settings: Settings, console: Console, db: PackageDB
) -> int:
    """Show the plan, ask for confirmation and run it."""
    plan = resolution.plan
    unresolved = ExitCode.RESOLUTION_FAILED if resolution.failures else ExitCode.SUCCESS
    console.print(plan_tree(resolution))

    if not len(plan) and not plan.repo_prerequisites:
        if not resolution.failures:
            console.print("[green]Nothing to do.[/green]")
        return unresolved
    if args.dry_run:
        return unresolved
    if not args.noconfirm and not Confirm.ask(
        "[bold]Build and install these packages?[/bold]", console=console, default=True
    ):
        console.print("[yellow]Aborted.[/yellow]")
        return ExitCode.ERROR

    report = _orchestrator(db, settings).run(plan)
    console.print(report_table(report))
    code = exit_code_for(report)
    return code if code != ExitCode.SUCCESS else unresolved


def cmd_install(args, settings: Settings, console: Console) -> int:
    db = _open_db(settings, noconfirm=args.noconfirm)
    with _open_aur(settings) as aur:
        console.print(f"[bold]Resolving dependencies for: {', '.join(args.packages)}...[/bold]")
        resolution = DependencyResolver(db, aur).resolve(args.packages)
    return _execute(resolution, args, settings, console, db)


def cmd_update(args, settings: Settings, console: Console) -> int:
    db = _open_db(settings, noconfirm=args.noconfirm)
    code = ExitCode.SUCCESS
    with _open_aur(settings) as aur:
        outdated: List[str] = []
        for name in args.packages:
            installed = db.installed_version(name)
            if installed is None:
                LOGGER.error(f"{name} is not installed; use 'install' instead")
                code = ExitCode.ERROR
                continue
            record = aur.get(name)
            if record is None:
                LOGGER.error(f"{name} is not in the AUR")
                code = ExitCode.ERROR
                continue
            if vercmp(record.version, installed) > 0:
                console.print(f"[b]{name}[/b]: {installed} -> [green]{record.version}[/green]")
                outdated.append(name)
            else:
                console.print(f"[b]{name}[/b] is up to date ({installed})")
        if not outdated:
            return code
        resolution = DependencyResolver(db, aur).resolve(outdated, force_aur=outdated)
    result = _execute(resolution, args, settings, console, db)
    return result if result != ExitCode.SUCCESS else code


def cmd_remove(args, settings: Settings, console: Console) -> int:
    db = _open_db(settings, noconfirm=args.noconfirm)
    before = db.installed_packages()
    db.remove(args.packages)
    # pacman -Rs also takes out orphaned dependencies
    removed = set(args.packages) | (before.keys() - db.installed_packages().keys())
    for name in sorted(removed):
        for path in remove_cached(settings.package_dir, name):
            console.print(f"[dim]Deleted cached {path.name}[/dim]")
    console.print(f"[green]Removed {', '.join(args.packages)}.[/green]")
    return ExitCode.SUCCESS


def cmd_list(args, settings: Settings, console: Console) -> int:
    packages = cached_packages(settings.package_dir)
    if not packages:
        console.print("No cached packages.")
        return ExitCode.SUCCESS
    console.print(cache_table(packages))
    return ExitCode.SUCCESS


# ---- parser ---- #


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="aurbuild - resolve, build and install packages from the Arch User Repository.",
    )
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {_version()}")
    parser.add_argument("--config", metavar="PATH", help="Read settings from PATH.")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show debug output.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors.")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    search = sub.add_parser("search", help="Search the AUR by name and description.")
    search.add_argument("query")
    search.add_argument(
        "--by",
        default="name-desc",
        choices=["name", "name-desc", "maintainer", "depends", "makedepends", "provides"],
        help="Field to search (default: name-desc).",
    )
    search.add_argument(
        "-l", "--limit", type=int, default=0, help="Limit results; 0 shows everything."
    )
    search.set_defaults(func=cmd_search)

    info = sub.add_parser("info", help="Show AUR details for a package.")
    info.add_argument("package")
    info.add_argument(
        "--deps",
        action="store_true",
        help="Annotate each dependency with where it would be satisfied from.",
    )
    info.set_defaults(func=cmd_info)

    for name, func, help_text in (
        ("install", cmd_install, "Resolve, build and install packages."),
        ("update", cmd_update, "Rebuild installed AUR packages that have a newer version."),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("packages", nargs="+", metavar="PACKAGE")
        cmd.add_argument(
            "--dry-run", action="store_true", help="Print the plan without building anything."
        )
        cmd.add_argument(
            "--noconfirm", action="store_true", help="Do not ask before building or installing."
        )
        cmd.set_defaults(func=func)

    remove = sub.add_parser("remove", help="Remove packages and their cached builds.")
    remove.add_argument("packages", nargs="+", metavar="PACKAGE")
    remove.add_argument("--noconfirm", action="store_true", help="Pass --noconfirm to pacman.")
    remove.set_defaults(func=cmd_remove)

    list_cmd = sub.add_parser("list", help="List built packages in the local cache.")
    list_cmd.set_defaults(func=cmd_list)
    return parser


def main(argv: Optional[Sequence[str]] = None, console: Optional[Console] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet)
    console = console or Console()
    try:
        settings = Settings.load(args.config)
        return int(args.func(args, settings, console))
    except AurBuildError as e:
        console.print(f"[bold red]{e.name}[/bold red]: {e.kind}: {e.message}")
        return int(e.exit_code)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow]")
        return int(ExitCode.ERROR)


if __name__ == "__main__":
    sys.exit(main())
