import os
import json
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import networkx as nx
from scipy import stats as sstats

from fullsib.geno import Genotypes, MISSING
from fullsib.log import logger


# Segregation types of biallelic markers in an outcross (onemap notation)
SEG_TYPES = {
    "D1.10": {"codes": ["a", "ab"], "ratio": [1, 1]},      # ab x aa, informative for parent 1
    "D2.15": {"codes": ["a", "ab"], "ratio": [1, 1]},      # aa x ab, informative for parent 2
    "B3.7": {"codes": ["a", "ab", "b"], "ratio": [1, 2, 1]},  # ab x ab
}

MAP_FUNCTIONS = ("haldane", "kosambi")

# QTL genotype classes, index = 2 * (parent 1 haplotype) + (parent 2 haplotype)
STATES = ("ac", "ad", "bc", "bd")
_HAP1 = np.array([0, 0, 1, 1])
_HAP2 = np.array([0, 1, 0, 1])
_N_REC = (_HAP1[:, None] != _HAP1[None, :]).astype(int) + (_HAP2[:, None] != _HAP2[None, :]).astype(int)


# ------------------------
# map functions
# ------------------------

def rf_to_cm(r, map_function: str = "haldane"):
    r = np.clip(np.asarray(r, dtype=float), 0.0, 0.499)
    if map_function == "haldane":
        return -50.0 * np.log(1.0 - 2.0 * r)
    if map_function == "kosambi":
        return 25.0 * np.log((1.0 + 2.0 * r) / (1.0 - 2.0 * r))
    raise ValueError(f"Unknown map function '{map_function}'. Choose from {MAP_FUNCTIONS}")


def cm_to_rf(d, map_function: str = "haldane"):
    d = np.maximum(np.asarray(d, dtype=float), 0.0)
    if map_function == "haldane":
        return 0.5 * (1.0 - np.exp(-d / 50.0))
    if map_function == "kosambi":
        return 0.5 * np.tanh(d / 50.0)
    raise ValueError(f"Unknown map function '{map_function}'. Choose from {MAP_FUNCTIONS}")


# ------------------------
# segregation data
# ------------------------

class SegregationData:
    """Progeny calls of one fullsib family with each marker's segregation type.

    :param markers: indexed by marker; columns chrom, pos, seg_type, p1, p2
        (parent dosages)
    :param calls: marker x progeny dosages; calls incompatible with the
        parents are set to missing
    """

    def __init__(self, markers: pd.DataFrame, calls: pd.DataFrame, parent1: str = "P1", parent2: str = "P2"):
        if not markers.index.equals(calls.index):
            raise ValueError("Marker table and call matrix must share the same marker index.")
        unknown = set(markers["seg_type"]) - set(SEG_TYPES)
        if unknown:
            raise ValueError(f"Unknown segregation type(s): {sorted(unknown)}")
        self.markers = markers
        self.calls = calls
        self.parent1 = parent1
        self.parent2 = parent2

    @property
    def n_markers(self) -> int:
        return self.calls.shape[0]

    @property
    def n_ind(self) -> int:
        return self.calls.shape[1]

    @property
    def individuals(self) -> List[str]:
        return [str(c) for c in self.calls.columns]

    def subset(self, markers) -> "SegregationData":
        index = pd.Index(markers)
        return SegregationData(self.markers.loc[index], self.calls.loc[index], self.parent1, self.parent2)

    def missing_rate(self) -> pd.Series:
        return (self.calls == MISSING).mean(axis=1)

    def codes(self) -> pd.DataFrame:
        """Offspring classes in onemap codes (a, ab, b, -)."""
        out = pd.DataFrame("-", index=self.calls.index, columns=self.calls.columns, dtype=object)
        d = self.calls.to_numpy()
        for seg_type in SEG_TYPES:
            rows = (self.markers["seg_type"] == seg_type).to_numpy()
            if not rows.any():
                continue
            sub = d[rows]
            if seg_type == "B3.7":
                coded = np.select([sub == 0, sub == 1, sub == 2], ["a", "ab", "b"], default="-")
            else:
                hom_col = "p2" if seg_type == "D1.10" else "p1"
                hom = self.markers.loc[rows, hom_col].to_numpy()[:, None]
                coded = np.where(sub == MISSING, "-", np.where(sub == hom, "a", "ab"))
            out.iloc[np.where(rows)[0], :] = coded
        return out

    def transmitted(self) -> Tuple[np.ndarray, np.ndarray]:
        """Alt-allele content transmitted by each parent, -1 when not inferable."""
        d = self.calls.to_numpy().astype(np.int16)
        seg = self.markers["seg_type"].to_numpy()
        p1 = self.markers["p1"].to_numpy()[:, None]
        p2 = self.markers["p2"].to_numpy()[:, None]
        a1 = np.full(d.shape, -1, dtype=np.int8)
        a2 = np.full(d.shape, -1, dtype=np.int8)
        called = d != MISSING

        d1 = (seg == "D1.10")[:, None] & called
        a1 = np.where(d1, d - p2 // 2, a1)
        d2 = (seg == "D2.15")[:, None] & called
        a2 = np.where(d2, d - p1 // 2, a2)
        b3 = (seg == "B3.7")[:, None] & called & (d != 1)
        a1 = np.where(b3, d // 2, a1)
        a2 = np.where(b3, d // 2, a2)
        return a1.astype(np.int8), a2.astype(np.int8)


def classify_markers(family: Genotypes) -> SegregationData:
    """Type markers by parental genotypes; the first two samples are the parents.

    Markers with a missing parent call or two homozygous parents carry no
    segregation information and are dropped.
    """
    if family.n_samples < 3:
        raise ValueError("Family genotype matrix needs two parents and at least one progeny.")
    parent1, parent2 = family.samples[:2]
    p1 = family.calls.iloc[:, 0].to_numpy()
    p2 = family.calls.iloc[:, 1].to_numpy()
    seg_type = np.select(
        [(p1 == 1) & np.isin(p2, (0, 2)), np.isin(p1, (0, 2)) & (p2 == 1), (p1 == 1) & (p2 == 1)],
        ["D1.10", "D2.15", "B3.7"],
        default="",
    )
    keep = seg_type != ""
    logger.info(
        f"Classified {int(keep.sum())} of {family.n_markers} markers as segregating "
        f"(D1.10={int((seg_type == 'D1.10').sum())}, D2.15={int((seg_type == 'D2.15').sum())}, "
        f"B3.7={int((seg_type == 'B3.7').sum())})."
    )

    markers = family.markers.loc[keep, ["chrom", "pos"]].copy()
    markers["seg_type"] = seg_type[keep]
    markers["p1"] = p1[keep].astype(int)
    markers["p2"] = p2[keep].astype(int)

    calls = family.calls.iloc[:, 2:].loc[keep].to_numpy().astype(np.int16)
    lo = np.where(markers["seg_type"] == "D2.15", markers["p1"] // 2, markers["p2"] // 2)[:, None]
    lo = np.where((markers["seg_type"] == "B3.7").to_numpy()[:, None], 0, lo)
    hi = np.where((markers["seg_type"] == "B3.7").to_numpy()[:, None], 2, lo + 1)
    incompatible = (calls != MISSING) & ((calls < lo) | (calls > hi))
    if incompatible.any():
        logger.info(f"Set {int(incompatible.sum())} progeny calls incompatible with the parents to missing.")
    calls[incompatible] = MISSING
    calls = pd.DataFrame(calls.astype(np.int8), index=markers.index, columns=family.samples[2:])
    return SegregationData(markers, calls, parent1, parent2)


# ------------------------
# onemap-style raw file
# ------------------------

def write_raw(seg: SegregationData, path: str):
    """Write the outcross segregation file (onemap raw layout)."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    codes = seg.codes()
    with open(path, "w", encoding="utf-8") as w:
        w.write("data type outcross\n")
        w.write(f"{seg.n_ind} {seg.n_markers} 1 1 0\n")
        w.write(" ".join(seg.individuals) + "\n")
        for marker, row in codes.iterrows():
            w.write(f"*{marker} {seg.markers.at[marker, 'seg_type']} " + " ".join(row.tolist()) + "\n")
        w.write("*CHROM " + " ".join(seg.markers["chrom"].astype(str).tolist()) + "\n")
        w.write("*POS " + " ".join(seg.markers["pos"].astype(str).tolist()) + "\n")
    logger.info(f"Segregation file with {seg.n_markers} markers saved to {path}")


def read_raw(path: str) -> SegregationData:
    """Read an outcross segregation file written by :func:`write_raw`.

    Allele labels are not part of the format, so the homozygous parent is
    recoded as reference (dosage 0); segregation is unchanged.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Segregation file not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        lines = [line.rstrip("\n") for line in handle if line.strip()]
    if not lines or lines[0].strip() != "data type outcross":
        raise ValueError(f"{path} is not an outcross segregation file.")
    n_ind, n_mar = (int(v) for v in lines[1].split()[:2])
    individuals = lines[2].split()
    if len(individuals) != n_ind:
        raise ValueError(f"Expected {n_ind} individual names, found {len(individuals)}.")

    names, types, rows, chrom, pos = [], [], [], None, None
    for line in lines[3:]:
        fields = line.split()
        if fields[0] == "*CHROM":
            chrom = fields[1:]
        elif fields[0] == "*POS":
            pos = [int(p) for p in fields[1:]]
        else:
            names.append(fields[0].lstrip("*"))
            types.append(fields[1])
            rows.append(fields[2:])
    if len(names) != n_mar:
        raise ValueError(f"Expected {n_mar} markers, found {len(names)}.")
    if chrom is None or pos is None:
        raise ValueError("Segregation file has no *CHROM/*POS lines.")

    code_to_dosage = {"a": 0, "ab": 1, "b": 2, "-": MISSING}
    calls = np.array([[code_to_dosage[c] for c in row] for row in rows], dtype=np.int8)
    types = np.asarray(types)
    markers = pd.DataFrame({
        "chrom": chrom,
        "pos": pos,
        "seg_type": types,
        "p1": np.where(types == "D2.15", 0, 1),
        "p2": np.where(types == "D1.10", 0, 1),
    }, index=pd.Index(names, name="marker"))
    return SegregationData(markers, pd.DataFrame(calls, index=markers.index, columns=individuals))


# ------------------------
# filters and tests
# ------------------------

def filter_missing(seg: SegregationData, threshold: float = 0.25) -> SegregationData:
    """Drop markers whose progeny missing fraction exceeds the threshold."""
    rate = seg.missing_rate()
    keep = rate[rate <= threshold].index
    logger.info(
        f"Missing-data filter (> {threshold:.0%}): kept {len(keep)} of {seg.n_markers} markers."
    )
    return seg.subset(keep)


def test_segregation(seg: SegregationData, alpha: float = 0.05) -> pd.DataFrame:
    """Chi-square test of each marker against its Mendelian ratio.

    Markers below the Bonferroni threshold are flagged as distorted and kept.
    """
    codes = seg.codes()
    threshold = alpha / max(seg.n_markers, 1)
    rows = []
    for marker, row in codes.iterrows():
        seg_type = seg.markers.at[marker, "seg_type"]
        spec = SEG_TYPES[seg_type]
        observed = np.array([(row == c).sum() for c in spec["codes"]], dtype=float)
        n = observed.sum()
        if n > 0:
            expected = n * np.asarray(spec["ratio"], dtype=float) / sum(spec["ratio"])
            chi2, pval = sstats.chisquare(observed, expected)
        else:
            chi2, pval = float("nan"), float("nan")
        rows.append({
            "marker": marker,
            "seg_type": seg_type,
            "n": int(n),
            "observed": ":".join(str(int(o)) for o in observed),
            "expected": ":".join(str(r) for r in spec["ratio"]),
            "chi2": float(chi2),
            "pvalue": float(pval),
            "distorted": bool(pval < threshold) if not np.isnan(pval) else False,
        })
    result = pd.DataFrame(rows)
    logger.info(
        f"Segregation test: {int(result['distorted'].sum()) if len(result) else 0} of {len(result)} markers "
        f"distorted at Bonferroni threshold {threshold:.3g} (retained)."
    )
    return result


# ------------------------
# two-point analysis
# ------------------------

class TwoPoint:
    """Pairwise recombination fractions, LOD scores and phases."""

    def __init__(self, rf: pd.DataFrame, lod: pd.DataFrame, phase: pd.DataFrame):
        self.rf = rf
        self.lod = lod
        self.phase = phase

    def pairs(self, min_lod: float = 0.0) -> pd.DataFrame:
        """Long table of marker pairs (upper triangle)."""
        names = self.rf.index.to_numpy()
        i, j = np.triu_indices(len(names), k=1)
        df = pd.DataFrame({
            "marker1": names[i],
            "marker2": names[j],
            "rf": self.rf.to_numpy()[i, j],
            "lod": self.lod.to_numpy()[i, j],
            "phase": self.phase.to_numpy()[i, j],
        })
        return df[df["lod"] >= min_lod].reset_index(drop=True)


def _pair_counts(alleles: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    known = (alleles >= 0).astype(float)
    ones = (alleles == 1).astype(float)
    zeros = (alleles == 0).astype(float)
    n = known @ known.T
    same = ones @ ones.T + zeros @ zeros.T
    return n, same


def two_point(seg: SegregationData) -> TwoPoint:
    """Estimate recombination fraction and phase for all marker pairs.

    Each parent contributes the offspring whose transmitted allele is known
    at both markers; the phase (coupling/repulsion) of each parent is the one
    with fewer recombinants.
    """
    logger.info(f"Two-point analysis for {seg.n_markers} markers...")
    a1, a2 = seg.transmitted()
    rec_total = np.zeros((seg.n_markers, seg.n_markers))
    n_total = np.zeros_like(rec_total)
    phases = []
    for alleles in (a1, a2):
        n, same = _pair_counts(alleles)
        coupling = same >= n - same
        rec = np.where(coupling, n - same, same)
        rec_total += rec
        n_total += n
        phases.append(np.where(n == 0, "-", np.where(coupling, "C", "R")))

    with np.errstate(divide="ignore", invalid="ignore"):
        r = np.where(n_total > 0, rec_total / n_total, 0.5)
        nonrec = n_total - rec_total
        ll = np.where(rec_total > 0, rec_total * np.log10(np.where(r > 0, r, 1.0)), 0.0)
        ll += np.where(nonrec > 0, nonrec * np.log10(np.where(r < 1, 1.0 - r, 1.0)), 0.0)
        lod = ll + n_total * np.log10(2.0)
    np.fill_diagonal(r, 0.0)
    np.fill_diagonal(lod, np.nan)

    index = seg.markers.index
    phase = np.char.add(phases[0].astype(str), phases[1].astype(str))
    return TwoPoint(
        pd.DataFrame(r, index=index, columns=index),
        pd.DataFrame(lod, index=index, columns=index),
        pd.DataFrame(phase, index=index, columns=index),
    )


def linkage_check(seg: SegregationData, tp: TwoPoint, lod_threshold: float = 3.0, max_rf: float = 0.5) -> pd.DataFrame:
    """Linked components of markers within each reference chromosome.

    Groups are assigned from the reference genome; this only reports markers
    that are not linked to the bulk of their chromosome.
    """
    rows = []
    for chrom, sub in seg.markers.groupby("chrom", sort=False):
        names = sub.index.tolist()
        G = nx.Graph()
        G.add_nodes_from(names)
        rf = tp.rf.loc[names, names].to_numpy()
        lod = tp.lod.loc[names, names].to_numpy()
        i, j = np.triu_indices(len(names), k=1)
        linked = (lod[i, j] >= lod_threshold) & (rf[i, j] <= max_rf)
        G.add_edges_from((names[a], names[b]) for a, b in zip(i[linked], j[linked]))
        components = sorted(nx.connected_components(G), key=len, reverse=True)
        for k, comp in enumerate(components):
            for marker in comp:
                rows.append({"marker": marker, "chrom": chrom, "component": k, "component_size": len(comp)})
        outside = sum(len(c) for c in components[1:])
        if outside:
            logger.warning(
                f"Chromosome {chrom}: {outside} of {len(names)} markers not linked to the main group "
                f"(LOD >= {lod_threshold}, rf <= {max_rf})."
            )
    return pd.DataFrame(rows, columns=["marker", "chrom", "component", "component_size"])


# ------------------------
# multipoint map
# ------------------------

def _transition(r: float) -> np.ndarray:
    return np.power(r, _N_REC) * np.power(1.0 - r, 2 - _N_REC)


def forward_backward(emit: np.ndarray, rf: np.ndarray) -> Tuple[np.ndarray, float, np.ndarray]:
    """Scaled forward-backward over the 4 fullsib inheritance states.

    :param emit: (loci, individuals, 4) emission probabilities
    :param rf: (loci - 1,) recombination fractions between adjacent loci
    :return: posterior state probabilities, log-likelihood, expected number
        of crossovers per interval summed over individuals and both meioses
    """
    L, n, S = emit.shape
    alpha = np.empty((L, n, S))
    scale = np.empty((L, n))
    a = 0.25 * emit[0]
    scale[0] = a.sum(axis=1)
    alpha[0] = a / scale[0][:, None]
    for k in range(1, L):
        a = (alpha[k - 1] @ _transition(rf[k - 1])) * emit[k]
        scale[k] = a.sum(axis=1)
        alpha[k] = a / scale[k][:, None]

    beta = np.empty_like(alpha)
    beta[L - 1] = 1.0
    for k in range(L - 2, -1, -1):
        beta[k] = ((emit[k + 1] * beta[k + 1]) @ _transition(rf[k]).T) / scale[k + 1][:, None]

    gamma = alpha * beta
    gamma /= gamma.sum(axis=2, keepdims=True)

    rec = np.zeros(max(L - 1, 0))
    for k in range(L - 1):
        xi = alpha[k][:, :, None] * _transition(rf[k])[None, :, :] * (emit[k + 1] * beta[k + 1])[:, None, :]
        xi /= xi.sum(axis=(1, 2), keepdims=True)
        rec[k] = float((xi * _N_REC[None, :, :]).sum())
    return gamma, float(np.log(scale).sum()), rec


def infer_phases(seg: SegregationData) -> pd.DataFrame:
    """Parental haplotypes (alt-allele content) along each chromosome in map order.

    The first heterozygous marker of a parent sets haplotype (1, 0); each
    following one is put in coupling or repulsion with the previous
    heterozygous marker of that parent, whichever has fewer recombinants.
    """
    a1, a2 = seg.transmitted()
    pos_of = {m: i for i, m in enumerate(seg.markers.index)}
    out = pd.DataFrame(index=seg.markers.index, columns=["h1a", "h1b", "h2a", "h2b", "phase"], dtype=object)
    for chrom, sub in seg.markers.groupby("chrom", sort=False):
        phase_labels = {m: ["-", "-"] for m in sub.index}
        for k, (dose_col, alleles, hap_cols) in enumerate(
            (("p1", a1, ("h1a", "h1b")), ("p2", a2, ("h2a", "h2b")))
        ):
            prev = None
            prev_hap = None
            for marker in sub.index:
                dose = int(sub.at[marker, dose_col])
                if dose != 1:
                    hap = (dose // 2, dose // 2)
                else:
                    if prev is None:
                        hap = (1, 0)
                        phase_labels[marker][k] = "C"
                    else:
                        x, y = alleles[pos_of[prev]], alleles[pos_of[marker]]
                        both = (x >= 0) & (y >= 0)
                        n = int(both.sum())
                        same = int((x[both] == y[both]).sum())
                        if same >= n - same:
                            hap = prev_hap
                            phase_labels[marker][k] = "C"
                        else:
                            hap = (prev_hap[1], prev_hap[0])
                            phase_labels[marker][k] = "R"
                    prev, prev_hap = marker, hap
                out.at[marker, hap_cols[0]] = hap[0]
                out.at[marker, hap_cols[1]] = hap[1]
        for marker in sub.index:
            out.at[marker, "phase"] = "".join(phase_labels[marker])
    for col in ("h1a", "h1b", "h2a", "h2b"):
        out[col] = out[col].astype(int)
    return out


def emissions(calls: np.ndarray, haps: np.ndarray, error: float) -> np.ndarray:
    """Emission probabilities (loci, individuals, 4) for observed dosages.

    :param calls: (loci, individuals) dosages, -1 missing
    :param haps: (loci, 4) columns h1a, h1b, h2a, h2b
    """
    expected = haps[:, [0, 1]][:, _HAP1] + haps[:, [2, 3]][:, _HAP2]
    d = calls[:, :, None]
    e = np.where(d == expected[:, None, :], 1.0 - error, error / 2.0)
    return np.where(d == MISSING, 1.0, e)


class LinkageMap:
    """Ordered, distance-annotated markers per chromosome."""

    def __init__(self, table: pd.DataFrame, summary: pd.DataFrame, map_function: str = "haldane", error: float = 0.05):
        self.table = table
        self.summary = summary
        self.map_function = map_function
        self.error = error

    @property
    def chromosomes(self) -> List[str]:
        return list(dict.fromkeys(self.table["chrom"].astype(str)))

    def chrom(self, chrom: str) -> pd.DataFrame:
        return self.table[self.table["chrom"].astype(str) == str(chrom)]

    def haplotypes(self, markers) -> np.ndarray:
        return self.table.set_index("marker").loc[list(markers), ["h1a", "h1b", "h2a", "h2b"]].to_numpy().astype(int)

    def save(self, out_dir: str, out_name: str) -> str:
        os.makedirs(out_dir, exist_ok=True)
        map_path = os.path.join(out_dir, f"{out_name}.map.csv")
        self.table.to_csv(map_path, index=False, float_format="%.6g")
        self.summary.to_csv(os.path.join(out_dir, f"{out_name}.map_summary.csv"), index=False)
        with open(os.path.join(out_dir, f"{out_name}.map.json"), "w", encoding="utf-8") as w:
            json.dump({"map_function": self.map_function, "error": self.error}, w, indent=2)
        logger.info(f"Linkage map saved to {map_path}")
        return map_path

    @classmethod
    def load(cls, out_dir: str, out_name: str) -> "LinkageMap":
        map_path = os.path.join(out_dir, f"{out_name}.map.csv")
        if not os.path.isfile(map_path):
            raise FileNotFoundError(f"Linkage map not found: {map_path}")
        table = pd.read_csv(map_path, dtype={"chrom": str, "marker": str, "phase": str})
        summary = pd.read_csv(os.path.join(out_dir, f"{out_name}.map_summary.csv"), dtype={"chrom": str})
        with open(os.path.join(out_dir, f"{out_name}.map.json"), "r", encoding="utf-8") as handle:
            meta = json.load(handle)
        return cls(table, summary, meta["map_function"], meta["error"])


def estimate_map(
    seg: SegregationData,
    tol: float = 1e-4,
    error: float = 0.05,
    map_function: str = "haldane",
    max_iter: int = 1000,
    init_rf: float = 0.05,
) -> LinkageMap:
    """Multipoint map per reference chromosome with marker order fixed by position.

    Inter-marker recombination fractions are re-estimated by EM on the
    fullsib HMM with a fixed genotyping-error rate. Non-convergence within
    ``max_iter`` iterations is reported per chromosome.
    """
    if not 0.0 < error < 1.0:
        raise ValueError("Genotyping error rate must be in (0, 1).")
    if map_function not in MAP_FUNCTIONS:
        raise ValueError(f"Unknown map function '{map_function}'. Choose from {MAP_FUNCTIONS}")

    markers = seg.markers.copy()
    markers["_input_order"] = np.arange(len(markers))
    ordered = markers.sort_values(["chrom", "pos", "_input_order"], kind="mergesort")
    seg = seg.subset(ordered.index)
    haps = infer_phases(seg)

    tables = []
    summaries = []
    for chrom, sub in seg.markers.groupby("chrom", sort=False):
        names = sub.index.tolist()
        calls = seg.calls.loc[names].to_numpy().astype(np.int16)
        hap = haps.loc[names, ["h1a", "h1b", "h2a", "h2b"]].to_numpy().astype(int)
        emit = emissions(calls, hap, error)
        L = len(names)
        rf = np.full(L - 1, init_rf)
        loglik = float("nan")
        converged = True
        iterations = 0
        if L > 1:
            converged = False
            prev = -np.inf
            for iterations in range(1, max_iter + 1):
                _, loglik, rec = forward_backward(emit, rf)
                rf = np.clip(rec / (2.0 * seg.n_ind), 1e-6, 0.5)
                if abs(loglik - prev) < tol:
                    converged = True
                    break
                prev = loglik
            if not converged:
                logger.warning(
                    f"Chromosome {chrom}: map estimation did not converge within {max_iter} iterations "
                    f"(tol={tol})."
                )
        cm = np.concatenate([[0.0], np.cumsum(rf_to_cm(rf, map_function))]) if L > 1 else np.zeros(1)
        table = pd.DataFrame({
            "chrom": str(chrom),
            "marker": names,
            "order": np.arange(1, L + 1),
            "pos": sub["pos"].to_numpy(),
            "cM": cm,
            "seg_type": sub["seg_type"].to_numpy(),
            "phase": haps.loc[names, "phase"].to_numpy(),
            "rf": np.concatenate([rf, [np.nan]]) if L > 1 else [np.nan],
        })
        table = pd.concat([table, haps.loc[names, ["h1a", "h1b", "h2a", "h2b"]].reset_index(drop=True)], axis=1)
        tables.append(table)
        summaries.append({
            "chrom": str(chrom),
            "n_markers": L,
            "length_cM": float(cm[-1]),
            "loglik": loglik,
            "iterations": iterations,
            "converged": converged,
        })
        logger.info(f"Chromosome {chrom}: {L} markers, {cm[-1]:.1f} cM, {iterations} EM iterations.")

    return LinkageMap(pd.concat(tables, ignore_index=True), pd.DataFrame(summaries), map_function, error)
