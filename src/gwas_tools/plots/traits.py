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
import os

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from gwas_tools.pipeline.preflight import list_input_files
from gwas_tools.utils import GwasToolsError

logger = logging.getLogger(__name__)

ID_COLUMNS = ["FID", "IID"]


class TraitFileError(GwasToolsError):
    """Trait file that cannot be used as a PLINK phenotype file."""


def trait_names(file_path):
    """
    Trait column names of a phenotype file.

    Parameters
    ----------
    file_path : str
        Whitespace-delimited file with a header ``FID IID trait_1 ... trait_n``.

    Returns
    -------
    list of str
        Header without the two identifier columns.
    """
    header = pd.read_csv(file_path, sep=r"\s+", nrows=0).columns
    return [str(c) for c in header[2:]]


def read_traits(file_path, missing=-9):
    """
    Read and check a phenotype file.

    Trait values are coerced to numbers and the missing sentinel becomes NaN.

    Raises
    ------
    TraitFileError
        Too few columns, unexpected identifier columns, or a non-numeric
        trait value; the message names the file and the column.
    """
    name = os.path.basename(str(file_path))
    try:
        df = pd.read_csv(file_path, sep=r"\s+", dtype={c: str for c in ID_COLUMNS})
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise TraitFileError(f"{name}: could not be parsed ({e})") from e

    if df.shape[1] < 3:
        raise TraitFileError(
            f"{name}: expected FID, IID and at least one trait column, got {list(df.columns)}")
    if [str(c).upper() for c in df.columns[:2]] != ID_COLUMNS:
        raise TraitFileError(
            f"{name}: first two columns must be FID and IID, got {list(df.columns[:2])}")
    df = df.rename(columns=dict(zip(df.columns[:2], ID_COLUMNS)))

    for col in df.columns[2:]:
        values = pd.to_numeric(df[col], errors="coerce")
        bad = df[col][values.isna() & df[col].notna()]
        if not bad.empty:
            raise TraitFileError(
                f"{name}: trait '{col}' has non-numeric values, e.g. {bad.iloc[0]!r} "
                f"(row {bad.index[0] + 2})")
        if missing is not None:
            values = values.mask(values == float(missing))
        df[col] = values
    return df


def to_long(traits):
    """
    Wide to long reshape: one row per (sample, trait) pair.

    Missing values are kept so the row count is always samples x traits.
    """
    value_columns = [c for c in traits.columns if c not in ID_COLUMNS]
    return traits.melt(id_vars=ID_COLUMNS, value_vars=value_columns,
                       var_name="trait", value_name="value")


def plot_trait_boxplots(file_path, output_folder, missing=-9):
    """
    Box plot of every trait of a phenotype file, one facet per trait with
    its own y scale.

    Returns
    -------
    str
        Path of the saved image, ``<output_folder>/<base name>_boxplot.png``.
    """
    traits = read_traits(file_path, missing=missing)
    long_df = to_long(traits)
    n_traits = long_df["trait"].nunique()
    logger.info("Plotting %d trait(s) from %s", n_traits, file_path)

    with sns.axes_style("whitegrid"):
        grid = sns.catplot(data=long_df, y="value", col="trait", kind="box",
                           sharey=False, col_wrap=min(n_traits, 4), height=4, aspect=0.8)
        grid.set_titles("{col_name}")
        grid.set_axis_labels("", "value")

    base = os.path.basename(str(file_path)).split(".")[0]
    output_path = os.path.join(str(output_folder), f"{base}_boxplot.png")
    grid.savefig(output_path, format="png")
    plt.close(grid.figure)
    logger.info("Plot saved to: %s", output_path)
    return output_path


def plot_all_traits(config):
    """
    Box plots for every file in ``Traits/``.

    A malformed file is reported and skipped; returns the saved paths.
    """
    saved = []
    for file_path in list_input_files(config.traits_dir):
        try:
            saved.append(plot_trait_boxplots(file_path, config.visualisations_dir,
                                             missing=config.missing_phenotype))
        except TraitFileError as e:
            logger.error("Skipping trait file: %s", e)
    return saved


def describe_traits(traits):
    """Sample count, missing count and mean of each trait column."""
    value_columns = [c for c in traits.columns if c not in ID_COLUMNS]
    return pd.DataFrame({
        "trait": value_columns,
        "n": [int(traits[c].notna().sum()) for c in value_columns],
        "missing": [int(traits[c].isna().sum()) for c in value_columns],
        "mean": [float(np.nanmean(traits[c])) if traits[c].notna().any() else np.nan
                 for c in value_columns],
    })
