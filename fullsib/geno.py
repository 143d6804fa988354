from __future__ import annotations
import os
import importlib
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from fullsib.log import logger


MISSING = -1

# Sample-name delimiters, tried in order. "<population>_<token>[_<plant>]"
# is the primary convention; "<population>-<token>[-<plant>]" the fallback.
SAMPLE_DELIMITERS = ("_", "-")


class FamilySpec(NamedTuple):
    family: str
    parent1: str
    parent2: str

    @property
    def parents(self) -> Tuple[str, str]:
        return (self.parent1, self.parent2)


class Genotypes:
    """Marker x sample genotype calls coded as alt-allele dosage (0/1/2, -1 missing)."""

    def __init__(self, markers: pd.DataFrame, calls: pd.DataFrame):
        if not markers.index.equals(calls.index):
            raise ValueError("Marker table and call matrix must share the same marker index.")
        if markers.index.has_duplicates:
            dup = markers.index[markers.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicated marker keys: {dup[:5]}")
        self.markers = markers
        self.calls = calls

    @property
    def samples(self) -> List[str]:
        return [str(s) for s in self.calls.columns]

    @property
    def n_markers(self) -> int:
        return self.calls.shape[0]

    @property
    def n_samples(self) -> int:
        return self.calls.shape[1]

    def subset_samples(self, samples: Sequence[str]) -> "Genotypes":
        missing = [s for s in samples if s not in self.calls.columns]
        if missing:
            raise ValueError(f"Samples not present in genotype matrix: {missing[:5]}")
        return Genotypes(self.markers, self.calls.loc[:, list(samples)])

    def __repr__(self):
        return f"Genotypes({self.n_markers} markers x {self.n_samples} samples)"


def _encode_gt_tuple(gt) -> int:
    if gt is None:
        return MISSING
    if any(a is None for a in gt):
        return MISSING
    alle = list(gt)
    if len(alle) != 2:
        return MISSING
    return int(sum(1 for a in alle if a != 0))


def _pysam():
    try:
        return importlib.import_module('pysam')
    except ImportError as e:
        raise RuntimeError("pysam is required to read VCF; please install pysam") from e


def read_vcf(vcf_path: str, samples: Optional[Sequence[str]] = None) -> Genotypes:
    """Read biallelic genotype calls from a (compressed) VCF.

    :param vcf_path: Path to VCF/BCF file
    :param samples: Optional subset of samples to keep, in the given order
    """
    if not os.path.exists(vcf_path):
        raise FileNotFoundError(f"VCF file not found: {vcf_path}")
    pysam = _pysam()
    logger.info(f"Reading VCF: {vcf_path}")
    records = []
    columns: List[np.ndarray] = []
    skipped = 0
    with pysam.VariantFile(vcf_path) as vf:
        all_samples = list(vf.header.samples)
        keep = list(samples) if samples is not None else all_samples
        absent = [s for s in keep if s not in all_samples]
        if absent:
            raise ValueError(f"Samples not found in VCF: {absent[:5]}")
        for rec in vf:
            if rec.alts is None or len(rec.alts) != 1:
                skipped += 1
                continue
            rid = rec.id or f"{rec.chrom}_{rec.pos}"
            col = np.full(len(keep), MISSING, dtype=np.int8)
            for j, name in enumerate(keep):
                col[j] = _encode_gt_tuple(rec.samples[name].get("GT", None))
            records.append((rid, rec.chrom, int(rec.pos), rec.ref, rec.alts[0]))
            columns.append(col)
    if skipped:
        logger.info(f"Skipped {skipped} non-biallelic records.")
    if not records:
        raise ValueError(f"No biallelic variants found in {vcf_path}")

    markers = pd.DataFrame(records, columns=["marker", "chrom", "pos", "ref", "alt"]).set_index("marker")
    calls = pd.DataFrame(np.vstack(columns), index=markers.index, columns=keep)
    geno = Genotypes(markers, calls)
    logger.info(f"Loaded {geno.n_markers} variants for {geno.n_samples} samples.")
    return geno


def write_genotypes(geno: Genotypes, path: str):
    """Write the call matrix as a tab-delimited table with marker metadata columns."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    table = pd.concat([geno.markers, geno.calls], axis=1)
    table.to_csv(path, sep="\t", index_label="marker")
    logger.info(f"Genotype matrix ({geno.n_markers} x {geno.n_samples}) saved to {path}")


def read_genotype_table(path: str) -> Genotypes:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Genotype table not found: {path}")
    table = pd.read_csv(path, sep="\t", dtype={"marker": str, "chrom": str})
    meta_cols = ["marker", "chrom", "pos", "ref", "alt"]
    missing = [c for c in meta_cols if c not in table.columns]
    if missing:
        raise ValueError(f"Genotype table is missing column(s): {missing}")
    table = table.set_index("marker")
    markers = table[meta_cols[1:]]
    calls = table.drop(columns=meta_cols[1:]).astype(np.int8)
    return Genotypes(markers, calls)


# ------------------------
# pedigree
# ------------------------

def parse_sample_name(name: str) -> Tuple[str, str, Optional[str]]:
    """Split a sample name into (population, token, plant).

    The token is the field after the first delimiter: a family number for
    progeny ("C4_159_001") or a clone name for parents ("C4_VEN25"). Names
    without a delimiter are bare clone names. When both delimiters occur the
    first convention wins.
    """
    name = str(name).strip()
    for delim in SAMPLE_DELIMITERS:
        if delim in name:
            parts = name.split(delim)
            plant = delim.join(parts[2:]) or None
            return parts[0], parts[1], plant
    return "", name, None


def build_pedigree(samples: Sequence[str], family: FamilySpec) -> pd.DataFrame:
    """Assign each sample a population, family token and role from its name."""
    rows = []
    for sample in samples:
        population, token, plant = parse_sample_name(sample)
        if token in family.parents and plant is None:
            role = "parent"
        elif token == family.family and plant is not None:
            role = "progeny"
        else:
            role = "other"
        rows.append({"sample": str(sample), "population": population, "family": token, "role": role})
    return pd.DataFrame(rows, columns=["sample", "population", "family", "role"])


def read_pedigree(path: str) -> pd.DataFrame:
    """Read an explicit pedigree table (columns: sample, family, role[, population]).

    Rows follow the same layout as :func:`build_pedigree`: progeny rows carry
    the family number, parent rows carry the parent clone name.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Pedigree file not found: {path}")
    ped = pd.read_csv(path, dtype=str)
    required = {"sample", "family", "role"}
    missing = required - set(ped.columns)
    if missing:
        raise ValueError(f"Pedigree file is missing column(s): {sorted(missing)}")
    bad = sorted(set(ped["role"]) - {"parent", "progeny", "other"})
    if bad:
        raise ValueError(f"Unknown pedigree role(s): {bad}")
    if "population" not in ped.columns:
        ped["population"] = ""
    return ped[["sample", "population", "family", "role"]]


def extract_family(geno: Genotypes, family: FamilySpec, pedigree: Optional[pd.DataFrame] = None) -> Genotypes:
    """Reduce a multi-family genotype matrix to one fullsib family.

    Columns of the result are parent1, parent2 and then the progeny in file
    order. Without an explicit pedigree, roles are parsed from sample names.
    """
    if pedigree is None:
        pedigree = build_pedigree(geno.samples, family)
    else:
        pedigree = pedigree[pedigree["sample"].isin(geno.samples)]

    parents: Dict[str, str] = {}
    for parent in family.parents:
        hits = pedigree[(pedigree["role"] == "parent") & (pedigree["family"] == parent)]["sample"].tolist()
        if len(hits) != 1:
            raise ValueError(f"Expected exactly one sample for parent '{parent}', found {len(hits)}: {hits}")
        parents[parent] = hits[0]

    progeny = pedigree[(pedigree["role"] == "progeny") & (pedigree["family"] == family.family)]["sample"].tolist()
    if not progeny:
        raise ValueError(f"No progeny found for family '{family.family}'.")

    order = [parents[family.parent1], parents[family.parent2]] + progeny
    logger.info(
        f"Family {family.family}: parents {parents[family.parent1]} x {parents[family.parent2]}, "
        f"{len(progeny)} progeny."
    )
    return geno.subset_samples(order)
