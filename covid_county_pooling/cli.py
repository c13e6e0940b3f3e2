"""
COVID-19 County Partial-Pooling Risk Maps - Command Line Entry Point.

Usage:
    covid-county-pooling --demo
    covid-county-pooling --data-path data/counties.csv --output output/run1/
"""

import argparse
import sys
from pathlib import Path

from loguru import logger

from .config import CountyModelConfig
from .data_ingestion import join_boundaries
from .exceptions import CountyPoolingError
from .pipeline import CountyPoolingPipeline
from .synthetic import make_grid_boundaries, simulate_county_data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="COVID-19 county infection-rate maps with hierarchical partial pooling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with synthetic demo data
  covid-county-pooling --demo

  # Run with a county table and the default boundary file
  covid-county-pooling --data-url https://example.org/counties.csv

  # Local files, quick sampling
  covid-county-pooling --data-path counties.csv --geojson-path counties.geojson --draws 500 --tune 500
        """
    )

    parser.add_argument('--demo', action='store_true', help='Run with synthetic demo data')

    data = parser.add_mutually_exclusive_group()
    data.add_argument('--data-url', type=str, help='URL of the county CSV')
    data.add_argument('--data-path', type=str, help='Path to the county CSV')

    geojson = parser.add_mutually_exclusive_group()
    geojson.add_argument('--geojson-url', type=str, help='URL of the county boundary GeoJSON')
    geojson.add_argument('--geojson-path', type=str, help='Path to the county boundary GeoJSON')

    parser.add_argument('--config', type=str, help='YAML file with sources/model/map overrides')
    parser.add_argument(
        '--output',
        type=str,
        default=str(CountyModelConfig.OUTPUT_DIR),
        help=f'Output directory (default: {CountyModelConfig.OUTPUT_DIR})'
    )

    parser.add_argument('--draws', type=int, help='MCMC draws per chain')
    parser.add_argument('--tune', type=int, help='MCMC tuning steps')
    parser.add_argument('--chains', type=int, help='Number of MCMC chains')
    parser.add_argument('--cores', type=int, help='Chains sampled in parallel')
    parser.add_argument('--seed', type=int, help='Random seed')

    parser.add_argument('--no-save', action='store_true', help='Do not write output files')

    return parser


def configure_logging():
    logger.remove()
    logger.add(
        sys.stdout,
        format=CountyModelConfig.LOG_FORMAT,
        level=CountyModelConfig.LOG_LEVEL
    )
    logger.add(
        CountyModelConfig.LOG_FILE,
        format=CountyModelConfig.LOG_FORMAT,
        level="DEBUG"
    )


def main(argv=None):
    """Main entry point for CLI."""
    args = build_parser().parse_args(argv)

    configure_logging()

    try:
        if args.config:
            CountyModelConfig.apply_overrides(CountyModelConfig.load_from_yaml(args.config))

        valid, errors = CountyModelConfig.validate()
        if not valid:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            sys.exit(1)

        sample_kwargs = {
            key: value
            for key, value in (
                ('draws', args.draws),
                ('tune', args.tune),
                ('chains', args.chains),
                ('cores', args.cores),
                ('random_seed', args.seed),
            )
            if value is not None
        }

        pipeline = CountyPoolingPipeline(
            output_dir=Path(args.output),
            save_outputs=not args.no_save
        )

        if args.demo:
            logger.info("Generating synthetic demo data...")
            counties = simulate_county_data(seed=args.seed if args.seed is not None else 42)
            boundaries = make_grid_boundaries(counties['fips'])
            joined = join_boundaries(counties, boundaries)
            pipeline.run(counties=joined, **sample_kwargs)
        else:
            data_source = args.data_url or args.data_path or CountyModelConfig.COUNTY_DATA_URL
            if not data_source:
                logger.error("Must provide --data-url or --data-path (or set COUNTY_DATA_URL), or use --demo")
                sys.exit(1)

            pipeline.run(
                data_source=data_source,
                geojson_source=args.geojson_url or args.geojson_path,
                **sample_kwargs
            )

    except CountyPoolingError as e:
        logger.error(f"✗ {e}")
        sys.exit(1)

    report_path = Path(args.output) / "report.md"
    pipeline.generate_report(output_path=report_path if not args.no_save else None)

    logger.info(f"✓ All outputs saved to: {args.output}")


if __name__ == "__main__":
    main()
