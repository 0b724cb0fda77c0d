#!/usr/bin/env python3
##########################################################################
# NSAp - Copyright (C) CEA, 2023
# Distributed under the terms of the CeCILL-B license, as published by
# the CEA-CNRS-INRIA. Refer to the LICENSE file or to
# http://www.cecill.info/licences/Licence_CeCILL-B_V1-en.html
# for details.
# Antoine Dufournet
##########################################################################
"""
gwas-tools

Usage example:
gwas-tools all \
  --home /data/study \
  --plink /opt/plink/plink \
  --call-rate 0.1 --maf 0.05 --pca 10 --format vcf

Steps, each available on its own:
 - check:     create Results/ and Scratch/, probe PLINK, list the inputs,
 - traits:    box plots of the trait file(s),
 - run:       PLINK QC, PCA and linear association per chromosome,
 - aggregate: merged CSV, Q-Q and Manhattan plots per trait,
 - all:       the four steps above in order.
"""
import argparse
import logging
import sys

from gwas_tools.pipeline.aggregate import aggregate
from gwas_tools.pipeline.config import (
    ConfigError,
    FileFormat,
    StructureMode,
    config_from_args,
)
from gwas_tools.pipeline.plink import PipelineCancelled
from gwas_tools.pipeline.preflight import (
    PreflightError,
    check_environment,
    ensure_directories,
    list_input_files,
)
from gwas_tools.pipeline.runner import GwasRunner
from gwas_tools.plots.traits import TraitFileError, describe_traits, plot_all_traits, read_traits
from gwas_tools.utils import GwasToolsError, setup_logging

logger = logging.getLogger("gwas_tools")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_parser():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="YAML configuration file; flags override its values.")
    common.add_argument("--home", help="Study folder holding Traits/ and Genotypes/.")
    common.add_argument("--plink", help="PLINK binary to call (default 'plink')")
    common.add_argument("--call-rate", type=float,
                        help="Maximum missing-call fraction per variant, PLINK --geno (default 0.1)")
    common.add_argument("--maf", type=float,
                        help="Minimum minor allele frequency, PLINK --maf (default 0.05)")
    common.add_argument("--pca", type=int,
                        help="Number of principal components used as covariates (default 10)")
    common.add_argument("--format", choices=[f.value for f in FileFormat],
                        help="Genotype file format (default vcf)")
    common.add_argument("--structure", choices=[m.value for m in StructureMode],
                        help="Estimate population structure per chromosome (default) "
                             "or once for the whole genome")
    common.add_argument("--workers", type=int,
                        help="Chromosomes processed at the same time (default 1)")
    common.add_argument("--timeout", type=float,
                        help="Seconds after which a PLINK command is stopped")
    common.add_argument("--keep-intermediate", action="store_true",
                        help="Keep PLINK binary filesets in Scratch/")
    common.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    common.add_argument("--log-file", help="Also write the log to this file.")

    parser = argparse.ArgumentParser(
        description="Run a PLINK based GWAS over per-chromosome genotype files.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("check", parents=[common], help="Preflight checks only.")
    sub.add_parser("traits", parents=[common], help="Box plots of the trait file(s).")
    sub.add_parser("run", parents=[common], help="QC, PCA and association per chromosome.")
    aggregate_parser = sub.add_parser("aggregate", parents=[common],
                                      help="Merge and plot the association results.")
    aggregate_parser.add_argument("--traits",
                                  help="Trait file naming the traits when Scratch/ has no "
                                       "manifest (default: the file in Traits/)")
    sub.add_parser("all", parents=[common], help="check, traits, run and aggregate.")
    return parser


def parse_args(argv=None):
    return build_parser().parse_args(argv)


def write_params(config):
    """Record the run parameters as ``key=value`` lines in Results/params.config."""
    config_path = config.results_dir / "params.config"
    with open(config_path, "w") as f:
        for k, v in config.as_params().items():
            f.write(f"{k}={v}\n")
    logger.info("Parameters saved to: %s", config_path)
    return config_path


def do_traits(config):
    saved = plot_all_traits(config)
    for path in saved:
        logger.info("Trait plot: %s", path)
    return saved


def do_run(config, report):
    try:
        traits = read_traits(report.trait_file, missing=config.missing_phenotype)
    except TraitFileError as e:
        raise PreflightError([str(e)]) from e
    for row in describe_traits(traits).itertuples():
        logger.info("Trait %s: %d sample(s), %d missing", row.trait, row.n, row.missing)

    write_params(config)
    runner = GwasRunner(config)
    try:
        manifest = runner.run(report.genotype_files, report.trait_file)
    except KeyboardInterrupt:
        runner.cancel()
        raise
    for entry in manifest.failed:
        logger.error("Chromosome %s %s: %s", entry.chromosome, entry.status, entry.error)
    return manifest


def do_aggregate(config, manifest=None, trait_file=None):
    summaries = aggregate(config, manifest=manifest, trait_file=trait_file)
    for s in summaries:
        if s.error:
            logger.error("Trait %s: %s", s.trait, s.error)
        else:
            logger.info("Trait %s: %d row(s) from %d chromosome(s), %d failed",
                        s.trait, s.rows, len(s.contributed), len(s.failed))
    return summaries


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        config = config_from_args(args)
        if args.command == "aggregate":
            ensure_directories(config)
            trait_file = args.traits
            if trait_file is None and not config.manifest_path.exists():
                trait_files = list_input_files(config.traits_dir)
                if len(trait_files) != 1:
                    raise PreflightError([f"Expected one trait file in {config.traits_dir}, "
                                          f"found {len(trait_files)}"])
                trait_file = trait_files[0]
            summaries = do_aggregate(config, trait_file=trait_file)
            return EXIT_OK if any(s.ok for s in summaries) else EXIT_FAILURE

        report = check_environment(config)
        if args.command == "check":
            return EXIT_OK
        if args.command in ("traits", "all"):
            do_traits(config)
            if args.command == "traits":
                return EXIT_OK

        manifest = do_run(config, report)
        if not manifest.succeeded:
            logger.error("Every chromosome failed, nothing to aggregate")
            return EXIT_FAILURE
        if args.command == "all":
            summaries = do_aggregate(config, manifest=manifest)
            if not any(s.ok for s in summaries):
                logger.error("No trait could be aggregated")
                return EXIT_FAILURE
        return EXIT_OK
    except (ConfigError, PreflightError) as e:
        logger.error("%s", e)
        return EXIT_FAILURE
    except (KeyboardInterrupt, PipelineCancelled):
        logger.error("Interrupted")
        return EXIT_INTERRUPTED
    except GwasToolsError as e:
        logger.error("%s", e)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
