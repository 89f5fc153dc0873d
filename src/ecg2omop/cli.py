"""
Command-line interface.

    ecg2omop transform --input_dir data/extracted --output_dir data/omop
    ecg2omop load --tables_dir data/omop --database_url sqlite:///omop.db --create_tables
    ecg2omop run --config pipeline.json
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

import sqlalchemy as sa

from ecg2omop.config import OUTPUT_FORMATS, PipelineConfig, load_config
from ecg2omop.errors import ConfigurationError, ECG2OMOPError
from ecg2omop.pipeline import run_load, run_pipeline, run_transform


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a JSON pipeline configuration; flags given on the command line take precedence",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=None,
        help="Enable verbose output",
    )


def _add_transform(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--input_dir", default=None, help="Directory with the extracted flat tables")
    parser.add_argument("--output_dir", default=None, help="Directory to write the OMOP tables to")
    parser.add_argument(
        "--vocabulary_dir",
        default=None,
        help="Directory with vocabulary mapping documents (default: the vocabularies shipped with ecg2omop)",
    )
    parser.add_argument(
        "--format",
        dest="output_format",
        choices=list(OUTPUT_FORMATS),
        default=None,
        help="Output file format (default: csv)",
    )


def _add_load(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--database_url", default=None, help="SQLAlchemy URL of the OMOP database")
    parser.add_argument("--db_schema", default=None, help="Database schema holding the OMOP tables")
    parser.add_argument(
        "--dry_run",
        action="store_true",
        default=None,
        help="Compare against the database and report, without writing anything",
    )
    parser.add_argument(
        "--create_tables",
        action="store_true",
        default=None,
        help="Create missing OMOP tables before loading",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ecg2omop", description="Flat ECG exam tables to OMOP CDM")
    subparsers = parser.add_subparsers(dest="command", required=True)

    transform = subparsers.add_parser("transform", help="Assemble OMOP tables from extracted flat tables")
    _add_common(transform)
    _add_transform(transform)

    load = subparsers.add_parser("load", help="Load OMOP tables from a directory into a database")
    _add_common(load)
    load.add_argument("--tables_dir", default=None, help="Directory written by 'ecg2omop transform'")
    _add_load(load)

    run = subparsers.add_parser("run", help="Transform and load in one go")
    _add_common(run)
    _add_transform(run)
    _add_load(run)

    return parser


def resolve_config(args: argparse.Namespace) -> PipelineConfig:
    config = load_config(args.config) if args.config else PipelineConfig()
    overrides = {
        k: v
        for k, v in vars(args).items()
        if k in PipelineConfig.__dataclass_fields__ and v is not None
    }
    return config.merged(**overrides)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_config(args)

        if args.command == "transform":
            if not config.input_dir or not config.output_dir:
                raise ConfigurationError("transform needs --input_dir and --output_dir (or a --config providing them)")
            run_transform(
                config.input_dir,
                output_dir=config.output_dir,
                vocabulary_dir=config.vocabulary_dir,
                output_format=config.output_format,
                verbose=config.verbose,
            )

        elif args.command == "load":
            tables_dir = args.tables_dir or config.output_dir
            if not tables_dir:
                raise ConfigurationError("load needs --tables_dir (or a --config providing output_dir)")
            result = run_load(
                tables_dir,
                config.database_url,
                db_schema=config.db_schema,
                dry_run=config.dry_run,
                create_tables=config.create_tables,
                verbose=config.verbose,
            )
            if not config.verbose:
                print(result.summary())

        else:
            result = run_pipeline(config)
            if not config.verbose:
                print(result.summary())

    except (ECG2OMOPError, sa.exc.SQLAlchemyError) as e:
        print(f"❌ {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
