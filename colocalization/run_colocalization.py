"""
Colocalization Batch Script
===========================
Runs the colocalization pipeline on one or more fitted-object catalogs.

Usage:
    run-colocalization catalogs/ --config colocalization.yml
    python -m colocalization.run_colocalization beads_01.ecsv beads_02.ecsv

Each catalog is processed independently; a failure is reported and the batch
moves on to the next file.
"""

import argparse
import glob
import logging
import os
import traceback
from pathlib import Path

from .colocalization_pipeline import ColocalizationPipeline, PipelineConfig

CATALOG_PATTERNS = ("*.ecsv", "*.fits")


def find_catalogs(inputs):
    """Expands directories into the catalog files they contain."""
    catalogs = []
    for item in inputs:
        if os.path.isdir(item):
            for pattern in CATALOG_PATTERNS:
                catalogs.extend(sorted(glob.glob(os.path.join(item, pattern))))
        else:
            catalogs.append(item)
    return catalogs


def process_single_file(catalog_file, output_dir, args):
    """Runs the pipeline for a single catalog. Returns True on success."""
    print(f"\nProcessing: {catalog_file}")

    if not os.path.exists(catalog_file):
        print(f"Skipping {catalog_file}: file not found.")
        return False

    overrides = dict(
        working_dir=output_dir,
        file_root=Path(catalog_file).stem,
        max_workers=args.max_workers,
    )
    try:
        if args.config:
            config = PipelineConfig.from_yaml(args.config, **overrides)
        else:
            config = PipelineConfig(**{k: v for k, v in overrides.items() if v is not None})

        pipeline = ColocalizationPipeline(config)
        pipeline.prepare_and_load_catalogs(catalog_file)
        pipeline.run()
    except Exception as e:
        print(f"FAILED to process {catalog_file}: {e}")
        traceback.print_exc()
        return False
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Determine chromatic correction, TRE and P3D separation fits."
    )
    parser.add_argument(
        "inputs", nargs="+", help="Catalog files, or directories of *.ecsv / *.fits catalogs"
    )
    parser.add_argument("--config", default=None, help="YAML file of pipeline settings")
    parser.add_argument(
        "--output_dir",
        default=None,
        help="Output directory (default: 'colocalization' next to each catalog)",
    )
    parser.add_argument("--max_workers", type=int, default=None, help="TRE worker threads")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    catalogs = find_catalogs(args.inputs)
    if not catalogs:
        print(f"No catalogs found in {', '.join(args.inputs)}.")
        return 1

    print(f"\n{'=' * 60}")
    print(f"Found {len(catalogs)} catalogs.")
    print(f"{'=' * 60}")

    n_failed = 0
    for catalog_file in catalogs:
        output_dir = args.output_dir or os.path.join(
            os.path.dirname(os.path.abspath(catalog_file)), "colocalization"
        )
        if not process_single_file(catalog_file, output_dir, args):
            n_failed += 1

    print(f"\nDone: {len(catalogs) - n_failed} succeeded, {n_failed} failed.")
    return 1 if n_failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
