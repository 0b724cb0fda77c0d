import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from gwas_tools.pipeline.config import make_config

# Stand-in for the PLINK 1.9 binary. It reads VCF text, applies --geno/--maf
# like PLINK does, and writes .bim/.fam/.bed, .eigenvec and one
# .assoc.linear file per phenotype column. Any run whose arguments contain
# $FAKE_PLINK_FAIL_ON exits with status 2.
FAKE_PLINK = textwrap.dedent('''\
    import os
    import sys

    args = sys.argv[1:]

    def opt(name, default=None):
        return args[args.index(name) + 1] if name in args else default

    if "--version" in args:
        print("PLINK v1.90b7 64-bit (fake)")
        sys.exit(0)

    fail_on = os.environ.get("FAKE_PLINK_FAIL_ON")
    if fail_on and any(fail_on in a for a in args):
        sys.stderr.write("Error: simulated failure\\n")
        sys.exit(2)

    out = opt("--out", "plink")
    with open(out + ".log", "w") as log:
        log.write(" ".join(args) + "\\n")

    def read_bim(prefix):
        with open(prefix + ".bim") as f:
            return [line.split() for line in f if line.strip()]

    if "--make-bed" in args and "--merge-list" not in args:
        genotype = opt("--vcf") or opt("--bcf")
        geno = float(opt("--geno", 0.1))
        maf = float(opt("--maf", 0.01))
        samples, kept = [], []
        with open(genotype) as f:
            for line in f:
                if line.startswith("##") or not line.strip():
                    continue
                fields = line.rstrip("\\n").split("\\t")
                if line.startswith("#CHROM"):
                    samples = fields[9:]
                    continue
                calls = [gt.split(":")[0].replace("|", "/") for gt in fields[9:]]
                missing = sum(1 for c in calls if "." in c)
                alleles = [int(a) for c in calls if "." not in c for a in c.split("/")]
                freq = sum(alleles) / len(alleles) if alleles else 0.0
                if missing / len(calls) > geno or min(freq, 1 - freq) < maf:
                    continue
                chrom = fields[0][3:] if fields[0].startswith("chr") else fields[0]
                kept.append([chrom, fields[2], "0", fields[1], fields[4], fields[3]])
        with open(out + ".bim", "w") as f:
            f.writelines("\\t".join(v) + "\\n" for v in kept)
        with open(out + ".fam", "w") as f:
            f.writelines(f"0 {s} 0 0 0 -9\\n" for s in samples)
        with open(out + ".bed", "wb") as f:
            f.write(bytes([0x6C, 0x1B, 0x01]))
        sys.exit(0)

    if "--merge-list" in args:
        first = opt("--bfile")
        with open(opt("--merge-list")) as f:
            prefixes = [first] + [line.strip() for line in f if line.strip()]
        with open(out + ".bim", "w") as f:
            for prefix in prefixes:
                f.writelines("\\t".join(v) + "\\n" for v in read_bim(prefix))
        with open(first + ".fam") as src, open(out + ".fam", "w") as dst:
            dst.write(src.read())
        with open(out + ".bed", "wb") as f:
            f.write(bytes([0x6C, 0x1B, 0x01]))
        sys.exit(0)

    if "--pca" in args:
        n = int(opt("--pca"))
        with open(opt("--bfile") + ".fam") as f:
            fam = [line.split() for line in f if line.strip()]
        with open(out + ".eigenvec", "w") as f:
            for i, row in enumerate(fam):
                pcs = " ".join(f"{0.01 * (i + 1) * (k + 1):.4f}" for k in range(n))
                f.write(f"{row[0]} {row[1]} {pcs}\\n")
        sys.exit(0)

    if "--linear" in args:
        if not os.path.exists(opt("--covar")):
            sys.stderr.write("Error: covariate file missing\\n")
            sys.exit(3)
        with open(opt("--pheno")) as f:
            traits = f.readline().split()[2:]
        bim = read_bim(opt("--bfile"))
        header = ["CHR", "SNP", "BP", "A1", "TEST", "NMISS", "BETA", "STAT", "P"]
        for t, trait in enumerate(traits):
            with open(f"{out}.{trait}.assoc.linear", "w") as f:
                f.write(" ".join(f"{h:>10}" for h in header) + "\\n")
                for i, (chrom, snp, _, bp, a1, _) in enumerate(bim):
                    p = 1e-5 if i == 0 else 0.2 + 0.1 * i
                    beta = float(t + 1)
                    rows = [[chrom, snp, bp, a1, "ADD", "3", beta, 1.5, p],
                            [chrom, snp, bp, a1, "COV1", "3", 0.1, 0.2, 0.9]]
                    for row in rows:
                        f.write(" ".join(f"{str(v):>10}" for v in row) + "\\n")
        sys.exit(0)

    sys.stderr.write("Error: unsupported arguments\\n")
    sys.exit(1)
''')

SAMPLES = ["s1", "s2", "s3"]

# Five variants: the first three pass the default QC (call rate 0.1,
# MAF 0.05), v4 is monomorphic and v5 misses one call out of three.
VARIANTS = [
    ("v1", 1000, ["0/1", "0/0", "1/1"]),
    ("v2", 2000, ["0/0", "0/1", "0/1"]),
    ("v3", 3000, ["0/1", "1/1", "0/0"]),
    ("v4", 4000, ["0/0", "0/0", "0/0"]),
    ("v5", 5000, ["./.", "0/1", "0/0"]),
]
PASSING = ["v1", "v2", "v3"]


def write_vcf(path, chrom, variants=VARIANTS, samples=SAMPLES):
    lines = [
        "##fileformat=VCFv4.2",
        '##FORMAT=<ID=GT,Number=1,Type=String,Description="Genotype">',
        "\t".join(["#CHROM", "POS", "ID", "REF", "ALT", "QUAL", "FILTER", "INFO",
                   "FORMAT"] + samples),
    ]
    for name, pos, calls in variants:
        lines.append("\t".join([chrom, str(pos), f"{chrom}_{name}", "A", "G", ".", "PASS",
                                ".", "GT"] + calls))
    Path(path).write_text("\n".join(lines) + "\n")
    return Path(path)


def write_traits(path, columns, rows):
    lines = [" ".join(["FID", "IID"] + columns)]
    lines += [" ".join(str(v) for v in row) for row in rows]
    Path(path).write_text("\n".join(lines) + "\n")
    return Path(path)


@pytest.fixture
def fake_plink(tmp_path):
    path = tmp_path / "bin" / "plink"
    path.parent.mkdir()
    path.write_text(f"#!{sys.executable}\n" + FAKE_PLINK)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def home(tmp_path):
    """Study folder with one trait (height) and chr1/chr2 genotype files."""
    home = tmp_path / "study"
    (home / "Traits").mkdir(parents=True)
    (home / "Genotypes").mkdir()
    write_traits(home / "Traits" / "phenotypes.txt", ["height"],
                 [[0, "s1", 170.5], [0, "s2", 180.2], [0, "s3", 165.0]])
    write_vcf(home / "Genotypes" / "chr1.vcf", "chr1")
    write_vcf(home / "Genotypes" / "chr2.vcf", "chr2")
    return home


@pytest.fixture
def two_trait_home(home):
    os.remove(home / "Traits" / "phenotypes.txt")
    write_traits(home / "Traits" / "phenotypes.txt", ["height", "weight"],
                 [[0, "s1", 170.5, 60.1], [0, "s2", 180.2, 82.4], [0, "s3", 165.0, -9]])
    return home


@pytest.fixture
def config(home, fake_plink):
    return make_config(home, plink=str(fake_plink), keep_intermediate=True)
