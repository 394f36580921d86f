"""
cli: command-line interface for balance_mart.

Entry points are registered in pyproject.toml under [project.scripts].
Add new subcommands here.

Current subcommands
-------------------
init          Create the mart database in a project folder.
mock          Generate a deterministic mock source database.
build         Reload dimensions and movements from a source database.
materialize   Materialise daily balances (full or incremental).
audit         Check materialised balances for gaps and inconsistencies.
export        Export balances and run records to Excel and/or CSV.

Exit codes: 0 on success; 1 when any account failed or was cancelled, when a
run-level error occurs, or when the audit finds problems.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from balance_mart.modules.errors import MartError


def _day_key_arg(text: str) -> int:
    from balance_mart.modules.calendar import parse_day_key

    try:
        return parse_day_key(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _project_path(args: argparse.Namespace) -> Path:
    return Path(args.project).resolve() if args.project else Path.cwd() / "mart_project"


def _cmd_init(args: argparse.Namespace) -> int:
    """Handler for the ``init`` subcommand."""
    from balance_mart.data.create_mart_db import create_mart_db
    from balance_mart.modules.paths import get_paths

    paths = get_paths(_project_path(args))
    create_mart_db(paths.mart_db, overwrite=args.overwrite, verbose=args.verbose)
    print(f"Database: {paths.mart_db}")
    return 0


def _cmd_mock(args: argparse.Namespace) -> int:
    """Handler for the ``mock`` subcommand."""
    from balance_mart.data.mock_source_data import generate_mock_source

    counts = generate_mock_source(Path(args.source), seed=args.seed)
    for table_name, count in counts.items():
        print(f"Inserted {count:,} {table_name}")
    print(f"Source:   {args.source}")
    return 0


def _cmd_build(args: argparse.Namespace) -> int:
    """Handler for the ``build`` subcommand."""
    from balance_mart.data.build_datamart import build_datamart
    from balance_mart.modules.paths import get_paths

    source = Path(args.source)
    if not source.is_file():
        print(f"Error: '{source}' is not a file.", file=sys.stderr)
        return 1
    paths = get_paths(_project_path(args))
    build_datamart(source_path=source, db_path=paths.require_mart_db(), as_of=args.as_of, verbose=not args.quiet)
    print("Done.")
    return 0


def _cmd_materialize(args: argparse.Namespace) -> int:
    """Handler for the ``materialize`` subcommand.

    Loads the configuration, applies any command-line overrides and runs one
    :class:`~balance_mart.modules.coordinator.BalanceRun`.

    Returns:
        Exit code (0 = every account succeeded, 1 = otherwise).
    """
    from balance_mart.modules.config import load_config
    from balance_mart.modules.coordinator import run_materialization

    config = load_config(Path(args.config) if args.config else None)
    config = config.with_overrides(workers=args.workers, batch_size=args.batch_size)
    summary = run_materialization(
        mode=args.mode,
        as_of=args.as_of,
        project_path=_project_path(args),
        config=config,
        account_ids=args.account,
        print_log=not args.quiet,
        turbo=not args.no_turbo,
    )
    for outcome in summary.failed:
        print(f"Failed:   account {outcome.account_id}: {outcome.error_kind}: {outcome.error_message}", file=sys.stderr)
    if summary.cancelled:
        print(f"Cancelled: {len(summary.cancelled)} account(s) not processed.", file=sys.stderr)
    print(f"Run:      {summary.run_id} ({summary.mode}, as of {summary.as_of})")
    return summary.exit_code


def _cmd_audit(args: argparse.Namespace) -> int:
    """Handler for the ``audit`` subcommand."""
    from balance_mart.data.audit import BalanceAudit
    from balance_mart.modules.paths import get_paths

    audit = BalanceAudit(get_paths(_project_path(args)).require_mart_db())
    results = audit.cleanup(delete=args.delete)
    return 0 if BalanceAudit.problem_count(results) == 0 else 1


def _cmd_export(args: argparse.Namespace) -> int:
    """Handler for the ``export`` subcommand."""
    from balance_mart.modules.paths import get_paths
    from balance_mart.modules.reports import export_csv, export_excel

    project_path = _project_path(args)
    paths = get_paths(project_path)
    paths.require_mart_db()
    if args.format in ("excel", "both"):
        print(f"Excel:    {export_excel(type=args.type, project_path=project_path)}")
    if args.format in ("csv", "both"):
        files = export_csv(type=args.type, project_path=project_path)
        print(f"CSV:      {len(files)} file(s) in {paths.csv}")
    return 0


def _add_project_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project",
        metavar="PATH",
        default=None,
        help="Project folder path (default: ./mart_project/ in CWD).",
    )


def main(argv: list[str] | None = None) -> None:
    """Entry point for the balance_mart CLI.

    Parses *argv* (``sys.argv`` when ``None``) and dispatches to the
    appropriate subcommand handler.
    """
    parser = argparse.ArgumentParser(
        prog="bmart",
        description="balance_mart: daily account balance materialisation",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # ------------------------------------------------------------------
    # init subcommand
    # ------------------------------------------------------------------
    init = subparsers.add_parser("init", help="Create the mart database in a project folder.")
    _add_project_arg(init)
    init.add_argument("--overwrite", action="store_true", default=False, help="Delete any existing mart database first.")
    init.add_argument("--verbose", action="store_true", default=False, help="Print the generated DDL.")

    # ------------------------------------------------------------------
    # mock subcommand
    # ------------------------------------------------------------------
    mock = subparsers.add_parser("mock", help="Generate a deterministic mock source database.")
    mock.add_argument("--source", metavar="PATH", required=True, help="Source database to create or refill.")
    mock.add_argument("--seed", type=int, default=42, help="Random seed (default: 42).")

    # ------------------------------------------------------------------
    # build subcommand
    # ------------------------------------------------------------------
    build = subparsers.add_parser(
        "build",
        help="Reload dimensions and movements from a source database.",
        description=(
            "Replace the mart dimensions and FactMovement with the contents of the "
            "source database and extend the calendar to cover --as-of. "
            "Materialised balances are not touched."
        ),
    )
    _add_project_arg(build)
    build.add_argument("--source", metavar="PATH", required=True, help="Source (operational) SQLite database.")
    build.add_argument("--as-of", type=_day_key_arg, default=None, dest="as_of", help="Last calendar day (default: today).")
    build.add_argument("--quiet", action="store_true", default=False, help="Suppress step timings.")

    # ------------------------------------------------------------------
    # materialize subcommand
    # ------------------------------------------------------------------
    mat = subparsers.add_parser(
        "materialize",
        help="Materialise daily balances.",
        description=(
            "Write one balance fact per account per calendar day up to --as-of. "
            "'full' rebuilds every account from its opening day; 'incremental' "
            "resumes each account from its watermark."
        ),
    )
    _add_project_arg(mat)
    mat.add_argument("--mode", choices=["full", "incremental"], required=True, help="Run mode.")
    mat.add_argument("--as-of", type=_day_key_arg, default=None, dest="as_of", help="Last day to materialise (default: today).")
    mat.add_argument("--workers", type=int, default=None, help="Worker count (default: config, else CPU count).")
    mat.add_argument("--batch-size", type=int, default=None, dest="batch_size", help="Facts per sink write (default: config).")
    mat.add_argument("--config", metavar="CONFIG_TOML", default=None, help="Path to a custom mart.toml.")
    mat.add_argument(
        "--account",
        type=int,
        action="append",
        default=None,
        metavar="ID",
        help="Only materialise this account (repeatable).",
    )
    mat.add_argument(
        "--no-turbo",
        action="store_true",
        default=False,
        dest="no_turbo",
        help="Process partitions one after another instead of in parallel.",
    )
    mat.add_argument("--quiet", action="store_true", default=False, help="Suppress progress output.")

    # ------------------------------------------------------------------
    # audit subcommand
    # ------------------------------------------------------------------
    audit = subparsers.add_parser("audit", help="Check materialised balances for gaps and inconsistencies.")
    _add_project_arg(audit)
    audit.add_argument(
        "--delete",
        action="store_true",
        default=False,
        help="Delete facts for accounts missing from DimAccount (default is to only report).",
    )

    # ------------------------------------------------------------------
    # export subcommand
    # ------------------------------------------------------------------
    export = subparsers.add_parser("export", help="Export balances and run records.")
    _add_project_arg(export)
    export.add_argument("--format", choices=["excel", "csv", "both"], default="both", help="Export file format (default: 'both').")
    export.add_argument(
        "--type",
        choices=["full", "simple"],
        default="simple",
        help="'simple' (default) exports flat balances only; 'full' adds accounts, calendar and run records.",
    )

    args = parser.parse_args(argv)

    handlers = {
        "init": _cmd_init,
        "mock": _cmd_mock,
        "build": _cmd_build,
        "materialize": _cmd_materialize,
        "audit": _cmd_audit,
        "export": _cmd_export,
    }
    try:
        code = handlers[args.command](args)
    except MartError as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
