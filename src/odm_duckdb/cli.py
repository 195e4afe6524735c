# -*- coding: utf-8 -*-
"""
ODM Store CLI

Command-line access to an ODM DuckDB store.

Usage:
    # Create (or upgrade) a store
    odm-store --db wells.duckdb init

    # Fetch values
    odm-store --db wells.duckdb fetch --site 509R2 --variable groundwaterDepth

    # Output formats
    odm-store --db wells.duckdb fetch --method LOGGER --format json -o levels.json

    # Provenance of a derived result
    odm-store --db wells.duckdb lineage 12
    odm-store --db wells.duckdb verify 12

    # Catalog contents
    odm-store --db wells.duckdb catalog variables
"""

import argparse
import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from .catalogs import MethodCatalog, ProcessingLevelCatalog, UnitCatalog, VariableCatalog
from .config import ODMConfig
from .derivation import DerivationEngine
from .exceptions import ODMError
from .odm_db import ODMDatabase
from .provenance import ActionRecorder
from .query import QueryFacade
from .sampling_features import SamplingFeatureRegistry

logger = logging.getLogger(__name__)

CATALOGS = {
    "units": UnitCatalog,
    "variables": VariableCatalog,
    "methods": MethodCatalog,
    "levels": ProcessingLevelCatalog,
    "features": SamplingFeatureRegistry,
}


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="odm-store",
        description="Query and inspect an ODM DuckDB store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --db wells.duckdb init
  %(prog)s --db wells.duckdb fetch --site 509R2
  %(prog)s --db wells.duckdb fetch --variable waterLevel --format json -o out.json
  %(prog)s --db wells.duckdb lineage 12
  %(prog)s --db wells.duckdb verify 12
  %(prog)s --db wells.duckdb catalog methods
        """,
    )

    parser.add_argument(
        "--db",
        help="Path to the store (default: $ODM_DB_PATH)",
    )
    parser.add_argument(
        "--vocabulary-policy",
        choices=["strict", "warn"],
        help="Handling of unknown controlled terms (default: $ODM_VOCABULARY_POLICY or strict)",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (default: $ODM_LOG_LEVEL or INFO)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the schema and report table counts")

    fetch = sub.add_parser("fetch", help="Fetch denormalized value rows")
    fetch.add_argument("--variable", "-V", help="Controlled variable name")
    fetch.add_argument("--variable-code", help="Variable code")
    fetch.add_argument("--site", "-s", help="Sampling feature code")
    fetch.add_argument("--method", "-m", help="Method code")
    fetch.add_argument(
        "--provenance",
        action="store_true",
        help="Include result id, kind, variable code, processing level and action id",
    )
    _add_output_arguments(fetch)

    lineage = sub.add_parser("lineage", help="Show the source results of a derived result")
    lineage.add_argument("result_id", type=int)
    _add_output_arguments(lineage)

    verify = sub.add_parser("verify", help="Recompute a derived result and compare")
    verify.add_argument("result_id", type=int)

    catalog = sub.add_parser("catalog", help="List catalog entries")
    catalog.add_argument("name", choices=sorted(CATALOGS))
    _add_output_arguments(catalog)

    return parser


def _add_output_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--format", "-f",
        choices=["csv", "json"],
        default="csv",
        help="Output format (default: csv)",
    )
    parser.add_argument(
        "--output", "-o",
        help="Output file (default: stdout)",
    )


def format_frame(df: pd.DataFrame, fmt: str) -> str:
    """Render a frame as CSV or JSON records."""
    if fmt == "json":
        return df.to_json(orient="records", date_format="iso", indent=2)
    return df.to_csv(index=False)


def write_output(text: str, output: Optional[str]) -> None:
    if output:
        output_path = Path(output)
        output_path.write_text(text)
        print(f"Written to: {output_path}")
    else:
        print(text)


def run_command(db: ODMDatabase, opts: argparse.Namespace) -> int:
    """Dispatch a parsed command against an open store."""
    if opts.command == "init":
        for table, n in db.count_records().items():
            print(f"{table:20s} {n}")
        return 0

    if opts.command == "fetch":
        df = QueryFacade(db).fetch(
            include_provenance=opts.provenance,
            variable_name=opts.variable,
            variable_code=opts.variable_code,
            site_code=opts.site,
            method_code=opts.method,
        )
        write_output(format_frame(df, opts.format), opts.output)
        return 0

    if opts.command == "lineage":
        df = pd.DataFrame(ActionRecorder(db).get_lineage(opts.result_id))
        write_output(format_frame(df, opts.format), opts.output)
        return 0

    if opts.command == "verify":
        report = DerivationEngine(db).verify(opts.result_id)
        for key, value in dataclasses.asdict(report).items():
            print(f"{key}: {value}")
        return 0 if report.reproduced else 1

    if opts.command == "catalog":
        df = CATALOGS[opts.name](db).list()
        write_output(format_frame(df, opts.format), opts.output)
        return 0

    raise ValueError(f"Unknown command: {opts.command}")


def main(args: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        args: Command-line arguments (default: sys.argv[1:])

    Returns:
        Exit code (0=success, 1=store error or verification mismatch, 2=cannot open store)
    """
    parser = create_parser()
    opts = parser.parse_args(args)

    config = ODMConfig.from_env()
    if opts.db:
        config.db_path = opts.db
    if opts.vocabulary_policy:
        config.vocabulary_policy = opts.vocabulary_policy
    if opts.log_level:
        config.log_level = opts.log_level.upper()
    if opts.command == "init":
        config.read_only = False

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    logger.debug(f"Running {opts.command!r} against {config.db_path}")
    try:
        db = ODMDatabase.from_config(config)
        db.connect()
    except Exception as e:
        print(f"Error opening store {config.db_path}: {e}", file=sys.stderr)
        return 2

    try:
        return run_command(db, opts)
    except ODMError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
