# -*- coding: utf-8 -*-
"""
Command line entry point.

    cll-mofa train --config cfg.json [--outfile model.hdf5]
    cll-mofa analyze MODEL METADATA [--config cfg.json] [--output DIR] [--all] [--variance] ...

Exit code 0 when every requested step succeeded, 1 otherwise (argparse
exits with 2 on usage errors).
"""
import os
import sys
import argparse
import logging

from .config import load_config
from .data import align_views, load_metadata, load_views
from .exceptions import CllMofaError
from .logging_utils import log_section, setup_logging
from .pipeline import SECTIONS, run_analysis
from .training import train_model

logger = logging.getLogger("cll_mofa.cli")

SECTION_FLAGS = {
    "overview": "Data overview (observed samples per view)",
    "variance": "Variance explained per factor and view",
    "correlation": "Factor correlation heatmap",
    "associations": "Factor-covariate associations",
    "factors": "Factor plots coloured by covariates",
    "weights": "Weights, top weights and data plots",
    "imputation": "Impute missing values from the model",
    "classification": "Predict missing IGHV/trisomy12 labels",
    "survival": "Cox regression and Kaplan-Meier curves",
}


def build_parser():
    parser = argparse.ArgumentParser(prog="cll-mofa", description="MOFA+ analysis of the CLL multi-omics cohort")
    subparsers = parser.add_subparsers(dest="command", required=True)

    train = subparsers.add_parser("train", help="Train a MOFA+ model on the configured views")
    train.add_argument("--config", help="JSON configuration file")
    train.add_argument("--outfile", help="Output HDF5 file (default: config 'model_file')")
    train.add_argument("--log-dir", help="Directory for a timestamped log file")

    analyze = subparsers.add_parser("analyze", help="Analyse a trained MOFA+ model")
    analyze.add_argument("model_file", help="Path to MOFA+ model HDF5 file")
    analyze.add_argument("metadata_file", help="Path to metadata CSV file")
    analyze.add_argument("--config", help="JSON configuration file")
    analyze.add_argument("--output", help="Output directory (default: config 'output_dir')")
    analyze.add_argument("--all", action="store_true", help="Run all sections")
    for section, help_text in SECTION_FLAGS.items():
        analyze.add_argument(f"--{section}", action="store_true", help=help_text)
    analyze.add_argument("--enrichment", metavar="FEATURE_SETS",
                         help="Run feature-set enrichment with this pathway x gene CSV")
    analyze.add_argument("--log-dir", help="Directory for a timestamped log file")
    return parser


def _selected_sections(args, config=None):
    """
    Sections named by the flags, or every section when none is given.

    A run without flags leaves out enrichment when `config` names no feature
    sets file; `--all` and `--enrichment` always include it.
    """
    selected = [s for s in SECTION_FLAGS if getattr(args, s)]
    if args.enrichment:
        selected.append("enrichment")
    if args.all:
        return list(SECTIONS)
    if selected:
        return [s for s in SECTIONS if s in selected]
    sections = list(SECTIONS)
    if config is not None and not config.get("feature_sets_file"):
        logger.info("No feature sets file configured; skipping the enrichment section (see --enrichment).")
        sections.remove("enrichment")
    return sections


def run_train(args):
    config = load_config(args.config)
    log_section(logger, "MOFA+ training - START")
    views = load_views(config["data_paths"], config["view_names"])
    views = align_views(views)
    metadata = None
    if config.get("group_by"):
        metadata = load_metadata(config["metadata_file"], config.get("sample_column", "sample"))
    outfile = train_model(views, config, outfile=args.outfile, metadata=metadata)
    logger.info(f"Training finished: {outfile}")
    return 0


def run_analyze(args):
    overrides = {"model_file": args.model_file, "metadata_file": args.metadata_file}
    if args.output:
        overrides["output_dir"] = args.output
        overrides["figure_dir"] = os.path.join(args.output, "figures")
    if args.enrichment:
        overrides["feature_sets_file"] = args.enrichment
    config = load_config(args.config, overrides=overrides)
    status = run_analysis(config, sections=_selected_sections(args, config))
    return 0 if status and all(status.values()) else 1


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(log_dir=args.log_dir)
    try:
        if args.command == "train":
            return run_train(args)
        return run_analyze(args)
    except CllMofaError as e:
        logger.error(f"FATAL ERROR: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
