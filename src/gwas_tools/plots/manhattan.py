# coding: utf-8
##########################################################################
# NSAp - Copyright (C) CEA, 2023
# Distributed under the terms of the CeCILL-B license, as published by
# the CEA-CNRS-INRIA. Refer to the LICENSE file or to
# http://www.cecill.info/licences/Licence_CeCILL-B_V1-en.html
# for details.
# Antoine Dufournet
##########################################################################

import logging

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats

from gwas_tools.utils import adjust_color_brightness, chromosome_sort_key

logger = logging.getLogger(__name__)

GENOME_WIDE = 5e-8
SUGGESTIVE = 1e-5


def _placeholder(ax, message):
    ax.text(0.5, 0.5, message, ha="center", va="center", transform=ax.transAxes,
            fontsize=16, color="gray")


def _clean_pvalues(pvalues):
    pvalues = np.asarray(pd.to_numeric(pd.Series(pvalues), errors="coerce"), dtype=float)
    pvalues = pvalues[~np.isnan(pvalues)]
    return pvalues[(pvalues > 0) & (pvalues <= 1)]


def lambda_gc(pvalues):
    """
    Genomic inflation factor: median observed chi-squared statistic over
    its expected median under the null (1 degree of freedom).
    """
    pvalues = _clean_pvalues(pvalues)
    if len(pvalues) == 0:
        return np.nan
    chisq = stats.chi2.isf(pvalues, df=1)
    return float(np.median(chisq) / stats.chi2.ppf(0.5, df=1))


def plot_qq(pvalues, output_path, title="Q-Q Plot"):
    """
    Observed against expected -log10(p) under a uniform null.

    Invalid p-values are dropped; with none left a placeholder figure is
    saved so that every chromosome still gets an image.
    """
    pvalues = np.sort(_clean_pvalues(pvalues))
    fig, ax = plt.subplots(figsize=(8, 8))

    if len(pvalues) == 0:
        logger.warning("No valid p-values for %s", title)
        _placeholder(ax, "No p-values")
    else:
        n = len(pvalues)
        expected = -np.log10(np.arange(1, n + 1) / (n + 1))
        observed = -np.log10(pvalues)
        ax.scatter(expected, observed, s=20, alpha=0.6, color="navy")
        upper = max(expected.max(), observed.max()) * 1.05
        ax.plot([0, upper], [0, upper], color="red", linestyle="--", linewidth=2)
        ax.set_xlim(0, upper)
        ax.set_ylim(0, upper)
        lam = lambda_gc(pvalues)
        ax.text(0.05, 0.95, rf"$\lambda_{{GC}}$ = {lam:.3f}  (n = {n})",
                transform=ax.transAxes, va="top", fontsize=14)

    ax.set_xlabel(r"Expected $-log_{10}{(p)}$", fontsize=16)
    ax.set_ylabel(r"Observed $-log_{10}{(p)}$", fontsize=16)
    ax.set_title(title, fontsize=18)
    fig.tight_layout()
    fig.savefig(str(output_path), format="png")
    plt.close(fig)
    logger.info("Plot saved to: %s", output_path)
    return output_path


def chromosome_offsets(df):
    """
    Cumulative start of each chromosome on a genome-wide axis, chromosomes in
    natural order and separated by a small gap.
    """
    chromosomes = sorted(df["CHR"].unique(), key=chromosome_sort_key)
    spans = df.groupby("CHR", sort=False)["BP"].max().reindex(chromosomes)
    gap = max(int(spans.max() * 0.02), 1) if len(spans) else 0
    offsets = (spans + gap).cumsum().shift(fill_value=0)
    return offsets


def genome_axis(df, layout=None):
    """Offsets and last position of each chromosome, taken from ``layout`` and ``df``."""
    if layout is not None and not layout.empty:
        df = pd.concat([layout[["CHR", "BP"]], df[["CHR", "BP"]]], ignore_index=True)
    offsets = chromosome_offsets(df)
    spans = df.groupby("CHR", sort=False)["BP"].max().reindex(offsets.index)
    return offsets, spans


def plot_manhattan(df, output_path, title="Manhattan Plot", base_color="blue", layout=None):
    """
    -log10(p) against genomic position, alternating shades per chromosome.

    Parameters
    ----------
    df : pandas.DataFrame
        Association rows with CHR, BP and P columns, already filtered.
    output_path : str
        PNG file to write.
    layout : pandas.DataFrame, optional
        Unfiltered table whose CHR/BP span sets the x axis, so that each
        chromosome keeps its width whatever its hits. Defaults to ``df``.

    An empty table renders an empty axis with a placeholder message.
    """
    fig, ax = plt.subplots(figsize=(21, 10.5))
    df = df.copy()
    df["P"] = pd.to_numeric(df["P"], errors="coerce")
    df = df[(df["P"] > 0) & df["P"].notna()]

    if df.empty:
        logger.warning("No variants to draw for %s", title)
        _placeholder(ax, "No variants pass the p-value filter")
        ax.set_xticks([])
    else:
        offsets, spans = genome_axis(df, layout)
        df["neg_log10_pval"] = -np.log10(df["P"])
        df["x_val"] = df["BP"] + df["CHR"].map(offsets)

        ticks, labels = [], []
        for chrom_idx, chrom in enumerate(offsets.index):
            chrom_data = df[df["CHR"] == chrom]
            brightness_factor = 1.5 if chrom_idx % 2 == 0 else 0.5
            ax.scatter(chrom_data["x_val"], chrom_data["neg_log10_pval"],
                       color=adjust_color_brightness(base_color, brightness_factor), s=12)
            ticks.append(offsets[chrom] + spans[chrom] / 2)
            labels.append(str(chrom))
        ax.set_xlim(0, offsets.iloc[-1] + spans[offsets.index[-1]])

        ax.axhline(y=-np.log10(GENOME_WIDE), color="r", linestyle="--")
        ax.axhline(y=-np.log10(SUGGESTIVE), color="g", linestyle="--")
        ax.set_xticks(ticks)
        ax.set_xticklabels(labels, fontsize=16)
        ax.set_ylim(bottom=0, top=max(df["neg_log10_pval"].max(),
                                      -np.log10(GENOME_WIDE)) * 1.05)

    ax.set_xlabel("Chromosome", fontsize=22)
    ax.set_ylabel(r"$-log_{10}{(p)}$", fontsize=22)
    ax.set_title(title, fontsize=24)
    ax.tick_params(axis="y", labelsize=16)
    fig.tight_layout()
    fig.savefig(str(output_path), format="png")
    plt.close(fig)
    logger.info("Plot saved to: %s", output_path)
    return output_path
