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
Per-chromosome GWAS: PLINK QC, population structure (PCA), then linear
association of every trait, for each genotype file.

Scratch layout, one folder per chromosome label:

    Scratch/<chrom>/qc.{bed,bim,fam}
    Scratch/<chrom>/pca.eigenvec
    Scratch/<chrom>/<chrom>.<trait>.assoc.linear
    Scratch/genome/...              (global structure only)
    Scratch/manifest.json

Chromosomes are independent once their covariates exist, so they can run
on a pool of workers. A failing chromosome is recorded in the manifest and
the others carry on.
"""
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path

from gwas_tools.pipeline.config import StructureMode
from gwas_tools.pipeline.plink import Plink, PlinkError, PipelineCancelled, remove_bfile
from gwas_tools.plots.traits import trait_names
from gwas_tools.utils import chromosome_label

logger = logging.getLogger(__name__)

PENDING = "pending"
OK = "ok"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass
class ChromosomeArtifacts:
    chromosome: str
    genotype: str
    qc_prefix: str = None
    covariates: str = None
    association: dict = field(default_factory=dict)
    status: str = PENDING
    error: str = None

    @property
    def ok(self):
        return self.status == OK

    def fail(self, error, status=FAILED):
        self.status = status
        self.error = str(error)


@dataclass
class RunManifest:
    trait_file: str
    traits: list
    structure: str
    chromosomes: list = field(default_factory=list)

    @property
    def succeeded(self):
        return [c for c in self.chromosomes if c.ok]

    @property
    def failed(self):
        return [c for c in self.chromosomes if not c.ok]

    def files_for(self, trait):
        """``{chromosome: association file}`` of one trait."""
        return {c.chromosome: Path(c.association[trait])
                for c in self.succeeded if trait in c.association}

    def failed_for(self, trait):
        """Chromosomes that did not produce a result for ``trait``."""
        return [c.chromosome for c in self.chromosomes
                if not c.ok or trait not in c.association]

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        chromosomes = [ChromosomeArtifacts(**c) for c in data.pop("chromosomes", [])]
        return cls(chromosomes=chromosomes, **data)

    def write(self, path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    @classmethod
    def read(cls, path):
        with open(path) as f:
            return cls.from_dict(json.load(f))


class PerChromosomeStructure:
    """Covariates estimated from each chromosome's own QC'd genotypes."""

    mode = StructureMode.PER_CHROMOSOME

    def prepare(self, runner, entries):
        pass

    def covariates(self, runner, entry):
        out_prefix = runner.chromosome_dir(entry.chromosome) / "pca"
        eigenvec = runner.plink.pca(entry.qc_prefix, runner.config.qc.pop_struct_dimensions,
                                    out_prefix, context=f"{entry.chromosome} pca")
        return eigenvec


class GlobalStructure:
    """
    Covariates estimated once from all QC'd chromosomes merged together and
    shared by every association test.
    """

    mode = StructureMode.GLOBAL

    def __init__(self):
        self.eigenvec = None

    def prepare(self, runner, entries):
        prefixes = [e.qc_prefix for e in entries]
        if not prefixes:
            return
        genome_dir = runner.config.scratch_dir / "genome"
        genome_dir.mkdir(parents=True, exist_ok=True)
        if len(prefixes) == 1:
            bfile = prefixes[0]
        else:
            bfile = runner.plink.merge(prefixes, genome_dir / "merged", context="genome merge")
        self.eigenvec = runner.plink.pca(bfile, runner.config.qc.pop_struct_dimensions,
                                         genome_dir / "pca", context="genome pca")
        if len(prefixes) > 1 and not runner.config.keep_intermediate:
            remove_bfile(genome_dir / "merged")

    def covariates(self, runner, entry):
        return self.eigenvec


def make_structure(mode):
    if StructureMode(mode) is StructureMode.GLOBAL:
        return GlobalStructure()
    return PerChromosomeStructure()


class GwasRunner:
    """
    Runs QC -> covariates -> association for each genotype file.

    Parameters
    ----------
    config : PipelineConfig
    structure : PerChromosomeStructure or GlobalStructure, optional
        Defaults to the strategy named by ``config.structure``.
    """

    def __init__(self, config, structure=None):
        self.config = config
        self.structure = structure or make_structure(config.structure)
        self._cancel = threading.Event()
        self.plink = Plink(config.plink, timeout=config.timeout, cancel=self._cancel)

    def cancel(self):
        """Skip chromosomes not started yet and stop running PLINK processes."""
        self._cancel.set()

    @property
    def cancelled(self):
        return self._cancel.is_set()

    def chromosome_dir(self, chromosome):
        path = self.config.scratch_dir / chromosome
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _map(self, func, entries):
        if self.config.workers == 1 or len(entries) < 2:
            for entry in entries:
                func(entry)
            return
        with ThreadPoolExecutor(max_workers=self.config.workers) as executor:
            futures = [executor.submit(func, e) for e in entries]
            try:
                for future in futures:
                    future.result()
            except KeyboardInterrupt:
                self.cancel()
                raise

    def _guard(self, entry, step, func):
        """Run one step of a chromosome, recording failure instead of raising."""
        if self.cancelled:
            entry.fail("cancelled", CANCELLED)
            return
        try:
            func(entry)
        except PipelineCancelled as e:
            entry.fail(e, CANCELLED)
        except (PlinkError, OSError) as e:
            logger.error("Chromosome %s failed at %s: %s", entry.chromosome, step, e)
            entry.fail(e)

    def _qc(self, entry, trait_file):
        out_prefix = self.chromosome_dir(entry.chromosome) / "qc"
        entry.qc_prefix = str(self.plink.qc(entry.genotype, trait_file, self.config.qc,
                                            out_prefix, context=f"{entry.chromosome} qc"))

    def _associate(self, entry, trait_file, traits):
        entry.covariates = str(self.structure.covariates(self, entry))
        out_prefix = self.chromosome_dir(entry.chromosome) / entry.chromosome
        written = self.plink.association(entry.qc_prefix, trait_file, entry.covariates,
                                         traits, out_prefix,
                                         context=f"{entry.chromosome} association")
        entry.association = {t: str(p) for t, p in written.items()}
        missing = [t for t in traits if t not in written]
        if missing:
            logger.warning("Chromosome %s: no association output for trait(s) %s",
                           entry.chromosome, ", ".join(missing))
        entry.status = OK
        if not self.config.keep_intermediate:
            remove_bfile(entry.qc_prefix)
        logger.info("Chromosome %s done: %d trait result(s)", entry.chromosome, len(written))

    def run(self, genotype_files, trait_file):
        """
        Run the GWAS for every genotype file.

        Returns
        -------
        RunManifest
            Also written to ``Scratch/manifest.json``.
        """
        trait_file = str(trait_file)
        traits = trait_names(trait_file)
        manifest = RunManifest(trait_file=trait_file, traits=traits,
                               structure=self.structure.mode.value)
        labels = set()
        for genotype in sorted(genotype_files):
            label = chromosome_label(genotype)
            if label in labels:
                raise ValueError(f"Two genotype files share the chromosome label '{label}'")
            labels.add(label)
            manifest.chromosomes.append(ChromosomeArtifacts(label, str(genotype)))

        logger.info("Running GWAS on %d chromosome(s) for %d trait(s), %s structure, "
                    "%d worker(s)", len(manifest.chromosomes), len(traits),
                    self.structure.mode.value, self.config.workers)

        self._map(lambda e: self._guard(e, "qc", lambda e: self._qc(e, trait_file)),
                  manifest.chromosomes)

        qc_done = [e for e in manifest.chromosomes if e.status == PENDING]
        try:
            if not self.cancelled:
                self.structure.prepare(self, qc_done)
        except PipelineCancelled as e:
            for entry in qc_done:
                entry.fail(e, CANCELLED)
        except (PlinkError, OSError) as e:
            logger.error("Population structure estimation failed: %s", e)
            for entry in qc_done:
                entry.fail(e)

        pending = [e for e in manifest.chromosomes if e.status == PENDING]
        self._map(lambda e: self._guard(e, "association",
                                        lambda e: self._associate(e, trait_file, traits)),
                  pending)

        manifest.write(self.config.manifest_path)
        logger.info("GWAS finished: %d chromosome(s) succeeded, %d failed",
                    len(manifest.succeeded), len(manifest.failed))
        return manifest
