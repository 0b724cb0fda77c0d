import os

import pandas as pd
import pytest

from conftest import PASSING, VARIANTS, write_vcf
from gwas_tools.pipeline.config import make_config
from gwas_tools.pipeline.preflight import check_environment
from gwas_tools.pipeline.runner import (
    CANCELLED,
    FAILED,
    GlobalStructure,
    GwasRunner,
    PerChromosomeStructure,
    RunManifest,
)
from gwas_tools.utils import chromosome_label


def _run(config):
    report = check_environment(config)
    return GwasRunner(config).run(report.genotype_files, report.trait_file)


def _bim_ids(prefix):
    bim = pd.read_csv(f"{prefix}.bim", sep=r"\s+", header=None)
    return bim[1].tolist()


def _variant_stats(calls):
    missing = sum("." in c for c in calls) / len(calls)
    alleles = [int(a) for c in calls if "." not in c for a in c.split("/")]
    freq = sum(alleles) / len(alleles)
    return missing, min(freq, 1 - freq)


def test_chromosome_label():
    assert chromosome_label("/data/Genotypes/chr1.vcf.gz") == "chr1"
    assert chromosome_label("22.bcf") == "22"


def test_run_writes_per_chromosome_artifacts(config):
    manifest = _run(config)
    assert [c.chromosome for c in manifest.succeeded] == ["chr1", "chr2"]
    assert manifest.traits == ["height"]
    for entry in manifest.chromosomes:
        scratch = config.scratch_dir / entry.chromosome
        assert entry.qc_prefix == str(scratch / "qc")
        assert entry.covariates == str(scratch / "pca.eigenvec")
        assert entry.association == {
            "height": str(scratch / f"{entry.chromosome}.height.assoc.linear")}
    assert RunManifest.read(config.manifest_path) == manifest


def test_qc_output_respects_thresholds(config):
    manifest = _run(config)
    calls = {name: c for name, _, c in VARIANTS}
    for entry in manifest.chromosomes:
        kept = _bim_ids(entry.qc_prefix)
        assert kept == [f"{entry.chromosome}_{v}" for v in PASSING]
        for variant_id in kept:
            missing, maf = _variant_stats(calls[variant_id.split("_")[1]])
            assert missing <= config.qc.call_rate
            assert maf >= config.qc.maf


def test_qc_thresholds_reach_the_tool(home, fake_plink):
    config = make_config(home, plink=str(fake_plink), call_rate=0.5, keep_intermediate=True)
    manifest = _run(config)
    assert _bim_ids(manifest.chromosomes[0].qc_prefix) == [
        "chr1_v1", "chr1_v2", "chr1_v3", "chr1_v5"]


def test_intermediate_filesets_are_removed(home, fake_plink):
    config = make_config(home, plink=str(fake_plink))
    manifest = _run(config)
    for entry in manifest.chromosomes:
        assert not os.path.exists(f"{entry.qc_prefix}.bed")
        assert os.path.exists(entry.association["height"])


def test_failed_chromosome_is_isolated(config, monkeypatch):
    monkeypatch.setenv("FAKE_PLINK_FAIL_ON", "chr2.vcf")
    manifest = _run(config)
    assert [c.chromosome for c in manifest.succeeded] == ["chr1"]
    failed = manifest.failed[0]
    assert failed.chromosome == "chr2"
    assert failed.status == FAILED
    assert "simulated failure" in failed.error
    assert manifest.failed_for("height") == ["chr2"]
    assert list(manifest.files_for("height")) == ["chr1"]


def test_workers_give_the_same_result(home, fake_plink):
    for label in ("chr3", "chr4"):
        write_vcf(home / "Genotypes" / f"{label}.vcf", label)
    config = make_config(home, plink=str(fake_plink), workers=3)
    manifest = _run(config)
    assert [c.chromosome for c in manifest.succeeded] == ["chr1", "chr2", "chr3", "chr4"]


def test_global_structure_shares_covariates(home, fake_plink):
    config = make_config(home, plink=str(fake_plink), structure="global",
                         keep_intermediate=True)
    runner = GwasRunner(config)
    assert isinstance(runner.structure, GlobalStructure)
    report = check_environment(config)
    manifest = runner.run(report.genotype_files, report.trait_file)
    genome_pca = str(config.scratch_dir / "genome" / "pca.eigenvec")
    assert [c.covariates for c in manifest.succeeded] == [genome_pca, genome_pca]
    assert manifest.structure == "global"
    # Eigenvectors come from the merged fileset of both chromosomes.
    assert (config.scratch_dir / "genome" / "merged.mergelist").read_text().strip() == \
        str(config.scratch_dir / "chr2" / "qc")


def test_structure_strategy_is_pluggable(config):
    calls = []

    class Recording(PerChromosomeStructure):
        def covariates(self, runner, entry):
            calls.append(entry.chromosome)
            return super().covariates(runner, entry)

    report = check_environment(config)
    GwasRunner(config, structure=Recording()).run(report.genotype_files, report.trait_file)
    assert sorted(calls) == ["chr1", "chr2"]


def test_cancelled_runner_skips_everything(config):
    report = check_environment(config)
    runner = GwasRunner(config)
    runner.cancel()
    manifest = runner.run(report.genotype_files, report.trait_file)
    assert not manifest.succeeded
    assert {c.status for c in manifest.chromosomes} == {CANCELLED}


def test_duplicate_labels_rejected(config):
    report = check_environment(config)
    with pytest.raises(ValueError, match="chr1"):
        GwasRunner(config).run(report.genotype_files + [str(config.home / "x" / "chr1.bcf")],
                               report.trait_file)
