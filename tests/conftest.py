import os

import numpy as np
import pandas as pd
import pytest

from fullsib.geno import Genotypes, MISSING


PARENT1 = "C4_759"
PARENT2 = "C4_VEN25"
FAMILY = "159"
SEG_CYCLE = ("D1.10", "D2.15", "B3.7")
CHROMS = ("1", "2")
N_LINKED = 8
QTL_CHROM = "1"
QTL_MARKER = 3


def _parent_haplotypes(seg_type, rng):
    het = tuple(int(a) for a in rng.permutation([0, 1]))
    hom = (0, 0) if rng.random() < 0.5 else (1, 1)
    if seg_type == "D1.10":
        return het, hom
    if seg_type == "D2.15":
        return hom, het
    return het, tuple(int(a) for a in rng.permutation([0, 1]))


def _meiosis(n_loci, r, rng):
    origin = np.empty(n_loci, dtype=int)
    origin[0] = rng.integers(2)
    for k in range(1, n_loci):
        origin[k] = origin[k - 1] ^ int(rng.random() < r)
    return origin


def simulate_family(n_progeny=80, r=0.05, seed=7):
    """Simulate two linked chromosomes of an outcross family.

    Each chromosome carries N_LINKED segregating markers 1 Mb apart (types
    cycle D1.10, D2.15, B3.7), one marker for which both parents are
    homozygous, and chromosome 2 an unlinked marker with half its calls
    missing. The QTL value is the parent-1 haplotype transmitted at
    marker QTL_MARKER of chromosome QTL_CHROM.
    """
    rng = np.random.default_rng(seed)
    progeny = [f"C4_{FAMILY}_{i:03d}" for i in range(1, n_progeny + 1)]
    rows, names, columns = [], [], []
    qtl_origin = None
    for chrom in CHROMS:
        types = [SEG_CYCLE[k % 3] for k in range(N_LINKED)]
        haps = [_parent_haplotypes(t, rng) for t in types]
        origin1 = np.array([_meiosis(N_LINKED, r, rng) for _ in progeny])
        origin2 = np.array([_meiosis(N_LINKED, r, rng) for _ in progeny])
        if chrom == QTL_CHROM:
            qtl_origin = origin1[:, QTL_MARKER]
        for k in range(N_LINKED):
            h1, h2 = haps[k]
            dose = np.array(h1)[origin1[:, k]] + np.array(h2)[origin2[:, k]]
            pos = (k + 1) * 1_000_000
            names.append(f"{chrom}_{pos}")
            rows.append((chrom, pos, "A", "G"))
            columns.append(np.concatenate([[sum(h1), sum(h2)], dose]))

        pos = 8_500_000
        names.append(f"{chrom}_{pos}")
        rows.append((chrom, pos, "C", "T"))
        columns.append(np.concatenate([[0, 2], np.ones(n_progeny, dtype=int)]))

    pos = 9_000_000
    dose = rng.integers(0, 2, n_progeny)
    dose[rng.permutation(n_progeny)[: n_progeny // 2]] = MISSING
    names.append(f"2_{pos}")
    rows.append(("2", pos, "A", "T"))
    columns.append(np.concatenate([[0, 1], dose]))

    markers = pd.DataFrame(rows, columns=["chrom", "pos", "ref", "alt"], index=pd.Index(names, name="marker"))
    calls = pd.DataFrame(np.vstack(columns).astype(np.int8), index=markers.index, columns=[PARENT1, PARENT2] + progeny)
    qtl = pd.Series(qtl_origin.astype(float), index=progeny, name="qtl")
    return Genotypes(markers, calls), qtl


def simulate_trials(qtl: pd.Series, seed=11):
    """Two-trial phenotype table with progeny once per trial and replicated checks."""
    rng = np.random.default_rng(seed)
    checks = {"TME419": 3.0, "CR24": -1.0}
    frames = []
    for t, trial in enumerate(("T1", "T2")):
        labels = list(qtl.index) + [c for c in checks for _ in range(4)]
        labels = [labels[i] for i in rng.permutation(len(labels))]
        n_cols = 4
        row_effect = rng.normal(0, 0.8, len(labels) // n_cols + 1)
        plots = []
        for i, label in enumerate(labels):
            row, col = divmod(i, n_cols)
            g = 2.0 * qtl[label] if label in qtl.index else checks[label]
            plots.append({
                "trial": trial,
                "rep": 1,
                "row": row + 1,
                "col": col + 1,
                "genotype": label,
                "DM": 30.0 + 1.5 * t + g + row_effect[row] + rng.normal(0, 0.7),
                "FYLD": 12.0 + 0.5 * g + rng.normal(0, 1.0),
            })
        frames.append(pd.DataFrame(plots))
    return pd.concat(frames, ignore_index=True)


_GT = {0: "0/0", 1: "0/1", 2: "1/1", MISSING: "./."}


def write_vcf(path, geno: Genotypes, other_samples=5, seed=3):
    """Write the family plus an unrelated family as an uncompressed VCF."""
    rng = np.random.default_rng(seed)
    others = [f"C4_160_{i:03d}" for i in range(1, other_samples + 1)] + ["C4_TMS30572"]
    samples = geno.samples + others
    with open(path, "w") as w:
        w.write("##fileformat=VCFv4.2\n")
        for chrom in CHROMS:
            w.write(f"##contig=<ID={chrom},length=20000000>\n")
        w.write('##FORMAT=<ID=GT,Number=1,Type=String,Description="Genotype">\n')
        w.write("#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\tFORMAT\t" + "\t".join(samples) + "\n")
        for marker, meta in geno.markers.iterrows():
            calls = list(geno.calls.loc[marker]) + list(rng.integers(0, 3, len(others)))
            gts = "\t".join(_GT[int(c)] for c in calls)
            w.write(f"{meta['chrom']}\t{meta['pos']}\t.\t{meta['ref']}\t{meta['alt']}\t.\tPASS\t.\tGT\t{gts}\n")
            if marker == "2_9000000":
                gts = "\t".join("0/1" for _ in samples)
                w.write(f"2\t9500000\t.\tA\tG,T\t.\tPASS\t.\tGT\t{gts}\n")
    return path


@pytest.fixture(scope="session")
def family_data():
    return simulate_family()


@pytest.fixture(scope="session")
def family(family_data):
    return family_data[0]


@pytest.fixture(scope="session")
def qtl_values(family_data):
    return family_data[1]


@pytest.fixture(scope="session")
def trials(qtl_values):
    return simulate_trials(qtl_values)


@pytest.fixture(scope="session")
def data_dir(tmp_path_factory, family, trials):
    base = tmp_path_factory.mktemp("data")
    write_vcf(str(base / "toy.vcf"), family)
    trials.to_csv(base / "trials.csv", index=False)
    return base


@pytest.fixture(scope="session")
def vcf_path(data_dir):
    return str(data_dir / "toy.vcf")


@pytest.fixture(scope="session")
def phenotype_path(data_dir):
    return str(data_dir / "trials.csv")


@pytest.fixture(scope="session")
def blues_result(trials):
    from fullsib.phe import clean_phenotypes, estimate_blues

    clean = clean_phenotypes(trials, ["DM", "FYLD"])
    return estimate_blues(clean, ["DM", "FYLD"])


@pytest.fixture(scope="session")
def segregation(family):
    from fullsib.linkage import classify_markers, filter_missing

    return filter_missing(classify_markers(family), 0.25)


@pytest.fixture(scope="session")
def linkage_map(segregation):
    from fullsib.linkage import estimate_map

    return estimate_map(segregation)


@pytest.fixture(scope="session")
def genoprobs(linkage_map, segregation):
    from fullsib.qtl import genoprob

    return genoprob(linkage_map, segregation, step=1.0)


@pytest.fixture
def chdir_tmp(tmp_path):
    cwd = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(cwd)
