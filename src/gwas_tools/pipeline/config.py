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
Configuration of a GWAS run.

A ``PipelineConfig`` is built once, from a YAML file and/or command line
flags, and handed to every stage of the pipeline. Layout under ``home``:

    Traits/                   one phenotype file (FID IID trait_1 ... trait_n)
    Genotypes/                one VCF/BCF per chromosome
    Results/                  merged association tables
    Results/Visualisations/   box plots, Q-Q plots, Manhattan plots
    Scratch/                  PLINK intermediate files, one folder per chromosome
"""
import os
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path

import yaml

from gwas_tools.utils import GwasToolsError


class ConfigError(GwasToolsError):
    """Invalid configuration value or file."""


class FileFormat(str, Enum):
    """Genotype file formats understood by the QC step."""

    VCF = "vcf"
    BCF = "bcf"

    @property
    def flag(self):
        return f"--{self.value}"

    @property
    def suffixes(self):
        if self is FileFormat.VCF:
            return (".vcf", ".vcf.gz")
        return (".bcf",)


class StructureMode(str, Enum):
    """Where population-structure covariates are estimated."""

    PER_CHROMOSOME = "per-chromosome"
    GLOBAL = "global"


@dataclass(frozen=True)
class QCParams:
    call_rate: float = 0.1
    maf: float = 0.05
    pop_struct_dimensions: int = 10
    file_format: FileFormat = FileFormat.VCF

    def validate(self):
        if not 0.0 <= self.call_rate <= 1.0:
            raise ConfigError(f"call_rate must lie in [0, 1], got {self.call_rate}")
        if not 0.0 <= self.maf <= 0.5:
            raise ConfigError(f"maf must lie in [0, 0.5], got {self.maf}")
        if self.pop_struct_dimensions < 1:
            raise ConfigError(
                f"pop_struct_dimensions must be >= 1, got {self.pop_struct_dimensions}")


@dataclass(frozen=True)
class PipelineConfig:
    home: Path
    plink: str = "plink"
    qc: QCParams = field(default_factory=QCParams)
    structure: StructureMode = StructureMode.PER_CHROMOSOME
    workers: int = 1
    timeout: float = None
    missing_phenotype: float = -9
    p_threshold: float = 1e-3
    keep_intermediate: bool = False

    @property
    def traits_dir(self):
        return self.home / "Traits"

    @property
    def genotypes_dir(self):
        return self.home / "Genotypes"

    @property
    def results_dir(self):
        return self.home / "Results"

    @property
    def visualisations_dir(self):
        return self.results_dir / "Visualisations"

    @property
    def scratch_dir(self):
        return self.home / "Scratch"

    @property
    def manifest_path(self):
        return self.scratch_dir / "manifest.json"

    def output_dirs(self):
        return [self.results_dir, self.visualisations_dir, self.scratch_dir]

    def validate(self):
        self.qc.validate()
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")
        if not 0.0 < self.p_threshold <= 1.0:
            raise ConfigError(f"p_threshold must lie in (0, 1], got {self.p_threshold}")
        return self

    def as_params(self):
        """Flat ``{name: value}`` view, written to params.config."""
        params = {
            "home": str(self.home),
            "plink": self.plink,
            "call_rate": self.qc.call_rate,
            "maf": self.qc.maf,
            "pop_struct_dimensions": self.qc.pop_struct_dimensions,
            "file_format": self.qc.file_format.value,
            "structure": self.structure.value,
            "workers": self.workers,
            "timeout": self.timeout,
            "missing_phenotype": self.missing_phenotype,
            "p_threshold": self.p_threshold,
            "keep_intermediate": self.keep_intermediate,
        }
        return params


_QC_KEYS = {f.name for f in fields(QCParams)}
_TOP_KEYS = {f.name for f in fields(PipelineConfig)} - {"qc"}


def _coerce_enum(enum_cls, value, name):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(e.value for e in enum_cls)
        raise ConfigError(f"{name} must be one of {choices}, got {value!r}") from None


def _coerce_bool(value, name):
    if not isinstance(value, bool):
        raise ConfigError(f"{name} must be true or false, got {value!r}")
    return value


def _build(raw):
    raw = dict(raw)
    qc_raw = raw.pop("qc", None) or {}
    if not isinstance(qc_raw, dict):
        raise ConfigError("'qc' must be a mapping")
    # QC options are also accepted at the top level.
    for key in list(raw):
        if key in _QC_KEYS:
            qc_raw.setdefault(key, raw.pop(key))

    unknown = (set(raw) - _TOP_KEYS) | (set(qc_raw) - _QC_KEYS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
    if "home" not in raw or raw["home"] in (None, ""):
        raise ConfigError("'home' must be set")

    try:
        qc = QCParams(
            call_rate=float(qc_raw.get("call_rate", QCParams.call_rate)),
            maf=float(qc_raw.get("maf", QCParams.maf)),
            pop_struct_dimensions=int(qc_raw.get("pop_struct_dimensions",
                                                 QCParams.pop_struct_dimensions)),
            file_format=_coerce_enum(FileFormat, qc_raw.get("file_format", "vcf"),
                                     "file_format"),
        )
        timeout = raw.get("timeout")
        config = PipelineConfig(
            home=Path(os.path.expanduser(str(raw["home"]))).absolute(),
            plink=str(raw.get("plink", "plink")),
            qc=qc,
            structure=_coerce_enum(StructureMode,
                                   raw.get("structure", StructureMode.PER_CHROMOSOME.value),
                                   "structure"),
            workers=int(raw.get("workers", 1)),
            timeout=float(timeout) if timeout is not None else None,
            missing_phenotype=float(raw.get("missing_phenotype", -9)),
            p_threshold=float(raw.get("p_threshold", 1e-3)),
            keep_intermediate=_coerce_bool(raw.get("keep_intermediate", False),
                                            "keep_intermediate"),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e
    return config.validate()


def make_config(home, **options):
    """Build a validated config from keyword options (nested or flat QC keys)."""
    raw = {"home": home}
    raw.update({k: v for k, v in options.items() if v is not None})
    return _build(raw)


def load_config(path, **overrides):
    """
    Read a YAML configuration file.

    Parameters
    ----------
    path : str or Path
        YAML document with the ``PipelineConfig`` keys; QC options either
        at the top level or under a ``qc:`` mapping.
    overrides : dict
        Values taking precedence over the file (``None`` values are ignored).

    Returns
    -------
    PipelineConfig
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")
    with path.open() as handle:
        try:
            raw = yaml.safe_load(handle) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    qc_raw = dict(raw.get("qc") or {})
    for key, value in overrides.items():
        if value is None:
            continue
        if key in _QC_KEYS:
            qc_raw[key] = value
            raw.pop(key, None)
        else:
            raw[key] = value
    raw["qc"] = qc_raw
    return _build(raw)


def config_from_args(args):
    """Build the config of a CLI invocation; flags override ``--config``."""
    overrides = {
        "home": args.home,
        "plink": args.plink,
        "call_rate": args.call_rate,
        "maf": args.maf,
        "pop_struct_dimensions": args.pca,
        "file_format": args.format,
        "structure": args.structure,
        "workers": args.workers,
        "timeout": args.timeout,
        "keep_intermediate": True if args.keep_intermediate else None,
    }
    if args.config:
        return load_config(args.config, **overrides)
    if not args.home:
        raise ConfigError("Either --home or --config must be given")
    return make_config(**overrides)

