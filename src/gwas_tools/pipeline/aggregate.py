# coding: utf-8
##########################################################################
# NSAp - Copyright (C) CEA, 2023
# Distributed under the terms of the CeCILL-B license, as published by
# the CEA-CNRS-INRIA. Refer to the LICENSE file or to
# http://www.cecill.info/licences/Licence_CeCILL-B_V1-en.html
# for details.
# Antoine Dufournet
##########################################################################
"""
Merge the per-chromosome PLINK association results of each trait, write one
CSV per trait, and draw a Q-Q plot per chromosome and a Manhattan plot of
the variants with p below the configured threshold.
"""
import csv
import glob
import logging
import os
from dataclasses import dataclass, field

import pandas as pd

from gwas_tools.pipeline.runner import RunManifest
from gwas_tools.plots.manhattan import plot_manhattan, plot_qq
from gwas_tools.plots.traits import trait_names
from gwas_tools.utils import (
    GwasToolsError,
    chromosome_label,
    chromosome_sort_key,
    sanitize_filename,
)

logger = logging.getLogger(__name__)

ADDITIVE = "ADD"
ASSOC_COLUMNS = ["CHR", "SNP", "BP", "A1", "TEST", "NMISS", "BETA", "STAT", "P"]


@dataclass
class TraitSummary:
    trait: str
    contributed: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    rows: int = 0
    outputs: list = field(default_factory=list)
    error: str = None

    @property
    def ok(self):
        return self.error is None and bool(self.contributed)


def read_association(file_path):
    """
    Read a PLINK ``.assoc.linear`` file and keep the additive-effect rows.

    PLINK pads columns with spaces; 'NA' p-values become NaN.
    """
    df = pd.read_csv(file_path, sep=r"\s+", na_values=["NA"])
    missing = [c for c in ("CHR", "BP", "TEST", "P") if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns {missing} in {file_path}")
    df = df[df["TEST"] == ADDITIVE]
    return df.reset_index(drop=True)


def sort_association(df):
    """Stable sort by chromosome (natural order) then position."""
    if df.empty:
        return df.reset_index(drop=True)
    order = [chromosome_sort_key(c) for c in df["CHR"]]
    rank = ["_chr_group", "_chr_num", "_chr_name"]
    df = df.assign(**{col: [key[i] for key in order] for i, col in enumerate(rank)})
    keys = rank + ["BP"] + (["SNP"] if "SNP" in df.columns else [])
    df = df.sort_values(keys, kind="mergesort")
    return df.drop(columns=rank).reset_index(drop=True)


def merge_association(files, failed=None):
    """
    Concatenate the additive rows of several per-chromosome result files.

    Parameters
    ----------
    files : dict or list
        ``{chromosome label: path}`` or a list of paths; read in chromosome
        label order.
    failed : list, optional
        When given, labels of unreadable files are appended to it instead
        of raising.

    Returns
    -------
    pandas.DataFrame
        Rows sorted by chromosome and position, whatever the input order.
    """
    if not isinstance(files, dict):
        files = {chromosome_label(f): f for f in files}
    frames = []
    for label in sorted(files, key=chromosome_sort_key):
        try:
            frames.append(read_association(files[label]))
        except (OSError, ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            if failed is None:
                raise
            logger.error("Chromosome %s: cannot read %s: %s", label, files[label], e)
            failed.append(label)
    if not frames:
        return pd.DataFrame(columns=ASSOC_COLUMNS)
    return sort_association(pd.concat(frames, ignore_index=True))


def significant(df, threshold=1e-3):
    """Rows with ``P < threshold``."""
    return df[pd.to_numeric(df["P"], errors="coerce") < threshold]


def write_merged(df, output_path):
    df.to_csv(output_path, sep=",", index=False, quoting=csv.QUOTE_NONE, escapechar="\\")
    logger.info("Merged table saved to: %s", output_path)
    return output_path


def discover_association_files(scratch_dir, trait):
    """``{chromosome: path}`` of ``Scratch/<chrom>/<chrom>.<trait>.assoc.linear`` files."""
    pattern = os.path.join(glob.escape(str(scratch_dir)), "*",
                           f"*.{glob.escape(trait)}.assoc.linear")
    found = {}
    for path in sorted(glob.glob(pattern)):
        label = os.path.basename(os.path.dirname(path))
        if os.path.basename(path) == f"{label}.{trait}.assoc.linear":
            found[label] = path
    return found


def aggregate_trait(config, trait, files, failed=()):
    """
    Merge, save and plot one trait.

    Returns
    -------
    TraitSummary
    """
    summary = TraitSummary(trait=trait, failed=sorted(failed, key=chromosome_sort_key))
    name = sanitize_filename(trait)

    unreadable = []
    merged = merge_association(files, failed=unreadable)
    summary.contributed = [c for c in sorted(files, key=chromosome_sort_key)
                           if c not in unreadable]
    summary.failed = sorted(set(summary.failed) | set(unreadable), key=chromosome_sort_key)
    summary.rows = len(merged)

    csv_path = config.results_dir / f"{name}_gwas.csv"
    summary.outputs.append(write_merged(merged, csv_path))

    for chrom in sorted(merged["CHR"].unique(), key=chromosome_sort_key):
        qq_path = config.visualisations_dir / f"{name}_qq_chr{sanitize_filename(chrom)}.png"
        summary.outputs.append(plot_qq(merged.loc[merged["CHR"] == chrom, "P"], qq_path,
                                       title=f"{trait} - chromosome {chrom}"))

    hits = significant(merged, config.p_threshold)
    manhattan_path = config.visualisations_dir / f"{name}_manhattan.png"
    summary.outputs.append(plot_manhattan(hits, manhattan_path,
                                          title=f"{trait} (p < {config.p_threshold:g})",
                                          layout=merged))

    if summary.failed:
        logger.warning("Trait %s: %d chromosome(s) contributed, %d failed (%s)", trait,
                       len(summary.contributed), len(summary.failed),
                       ", ".join(summary.failed))
    else:
        logger.info("Trait %s: %d chromosome(s) contributed, 0 failed", trait,
                    len(summary.contributed))
    return summary


def aggregate(config, manifest=None, trait_file=None):
    """
    Aggregate every trait of a run.

    Parameters
    ----------
    config : PipelineConfig
    manifest : RunManifest, optional
        Defaults to ``Scratch/manifest.json`` when it exists; otherwise the
        result files are discovered by name in the scratch folder.
    trait_file : str, optional
        Source of the trait names when there is no manifest.

    Returns
    -------
    list of TraitSummary
    """
    if manifest is None and config.manifest_path.exists():
        manifest = RunManifest.read(config.manifest_path)

    if manifest is not None:
        traits = manifest.traits
    elif trait_file is not None:
        traits = trait_names(trait_file)
    else:
        raise GwasToolsError("No run manifest found and no trait file given")

    summaries = []
    for trait in traits:
        if manifest is not None:
            files = manifest.files_for(trait)
            failed = manifest.failed_for(trait)
        else:
            files = discover_association_files(config.scratch_dir, trait)
            failed = []
        try:
            summaries.append(aggregate_trait(config, trait, files, failed))
        except (OSError, ValueError, KeyError) as e:
            logger.error("Trait %s could not be aggregated: %s", trait, e)
            summaries.append(TraitSummary(trait=trait, failed=list(failed), error=str(e)))
    return summaries
