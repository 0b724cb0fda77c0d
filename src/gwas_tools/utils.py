# coding: utf-8
##########################################################################
# NSAp - Copyright (C) CEA, 2023
# Distributed under the terms of the CeCILL-B license.
# Antoine Dufournet
##########################################################################

import logging
import os

import matplotlib.colors as mcolors

LOG_FORMAT = '%(asctime)s %(levelname)s %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Sex chromosomes and mitochondria sort after the autosomes, PLINK numbering.
CHROM_TO_INT = {str(i): i for i in range(1, 23)}
CHROM_TO_INT.update({'X': 23, 'Y': 24, 'XY': 25, 'MT': 26, 'M': 26})


class GwasToolsError(Exception):
    """Base class of every error raised by gwas_tools."""


def setup_logging(level="INFO", log_file=None):
    """
    Configure the root logger for a pipeline run.

    Parameters
    ----------
    level : str or int
        Logging level name or value.
    log_file : str, optional
        When given, log records are also appended to this file.
    """
    handlers = [logging.StreamHandler()]
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT,
                        handlers=handlers, force=True)


def chromosome_label(file_path):
    """Base name of a genotype file up to its first period ('chr1.vcf.gz' -> 'chr1')."""
    return os.path.basename(str(file_path)).split(".")[0]


def chromosome_sort_key(label):
    """
    Natural ordering key for chromosome labels ('1' < '2' < '10' < 'X').

    Accepts integers and strings with or without a 'chr' prefix. Labels that
    are not chromosomes sort last, alphabetically.
    """
    text = str(label).strip()
    if text.lower().startswith("chr"):
        text = text[3:]
    text = text.upper()
    if text in CHROM_TO_INT:
        return (0, CHROM_TO_INT[text], "")
    if text.isdigit():
        return (0, int(text), "")
    return (1, 0, str(label))


def sanitize_filename(name):
    """Replace characters that do not belong in a file name."""
    return "".join(c if c.isalnum() or c in "._-" else "_" for c in str(name))


def adjust_color_brightness(color, factor):
    """
    Adjusts brightness of a color by blending with white (factor > 1)
    or black (factor < 1).
    """
    color = mcolors.to_rgb(color)
    return tuple(min(1, max(0, c * factor)) for c in color)
