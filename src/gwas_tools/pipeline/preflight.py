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
Checks run before any PLINK work: output folders, the PLINK executable,
and the Traits/ and Genotypes/ inputs. Inputs are only listed, never
modified.
"""
import logging
import os
from collections import Counter
from dataclasses import dataclass, field

from gwas_tools.pipeline.plink import run_command
from gwas_tools.utils import GwasToolsError, chromosome_label

logger = logging.getLogger(__name__)


class PreflightError(GwasToolsError):
    """The environment is not ready; nothing has been run."""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__("Preflight failed:\n" + "\n".join(f" - {p}" for p in self.problems))


@dataclass
class PreflightReport:
    created: list = field(default_factory=list)
    tool_version: str = ""
    trait_files: list = field(default_factory=list)
    genotype_files: list = field(default_factory=list)

    @property
    def trait_file(self):
        return self.trait_files[0]


def ensure_directories(config):
    """
    Create Results/, Results/Visualisations/ and Scratch/ when missing.

    Returns the directories that were created by this call.
    """
    created = []
    for directory in config.output_dirs():
        if not directory.is_dir():
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PreflightError([f"Cannot create {directory}: {e}"]) from e
            created.append(directory)
            logger.info("Created %s", directory)
        if not os.access(directory, os.W_OK | os.X_OK):
            raise PreflightError([f"{directory} is not writable"])
    return created


def probe_tool(config):
    """Run ``<plink> --version``; the result tells whether the tool is usable."""
    return run_command([config.plink, "--version"], timeout=config.timeout or 60)


def list_input_files(directory):
    """Sorted regular files of ``directory``, hidden files excluded."""
    if not os.path.isdir(directory):
        return []
    return sorted(
        entry.path for entry in os.scandir(directory)
        if entry.is_file() and not entry.name.startswith(".")
    )


def check_environment(config):
    """
    Run every preflight check and collect all problems before failing.

    Returns
    -------
    PreflightReport

    Raises
    ------
    PreflightError
        Listing every problem found; no subprocess work should follow.
    """
    report = PreflightReport(created=ensure_directories(config))
    problems = []

    probe = probe_tool(config)
    if probe.ok:
        lines = probe.stdout.strip().splitlines()
        report.tool_version = lines[0] if lines else ""
        logger.info("PLINK found: %s", report.tool_version or config.plink)
    else:
        problems.append(f"PLINK executable '{config.plink}' does not answer --version "
                        f"(status {probe.returncode}): {probe.tail(2)}")

    report.trait_files = list_input_files(config.traits_dir)
    report.genotype_files = list_input_files(config.genotypes_dir)
    if not report.trait_files:
        problems.append(f"No trait file in {config.traits_dir}")
    elif len(report.trait_files) > 1:
        problems.append(f"Exactly one trait file is expected in {config.traits_dir}, "
                        f"found {len(report.trait_files)}")
    if not report.genotype_files:
        problems.append(f"No genotype file in {config.genotypes_dir}")
    else:
        suffixes = config.qc.file_format.suffixes
        unexpected = [os.path.basename(f) for f in report.genotype_files
                      if not f.endswith(suffixes)]
        if unexpected:
            problems.append(f"Genotype files not in {config.qc.file_format.value} format: "
                            f"{', '.join(unexpected)}")
        labels = Counter(chromosome_label(f) for f in report.genotype_files)
        shared = sorted(label for label, n in labels.items() if n > 1)
        if shared:
            problems.append(f"Several genotype files share the chromosome label(s) "
                            f"{', '.join(shared)}")

    if problems:
        for problem in problems:
            logger.error(problem)
        raise PreflightError(problems)

    logger.info("Found %d trait file(s) and %d genotype file(s)",
                len(report.trait_files), len(report.genotype_files))
    return report
