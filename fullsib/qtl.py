import os
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm

from fullsib.cache import ArtifactCache, fingerprint
from fullsib.linkage import (
    LinkageMap,
    SegregationData,
    STATES,
    cm_to_rf,
    emissions,
    forward_backward,
)
from fullsib.log import logger


EFFECTS = ("ap", "aq", "dpq")


class GenoProbs:
    """Conditional QTL genotype probabilities along the genome.

    :param loci: one row per locus (chrom, locus, cM, marker, is_marker)
    :param probs: (loci, individuals, 4) probabilities of ac, ad, bc, bd
    """

    def __init__(self, loci: pd.DataFrame, probs: np.ndarray, individuals: List[str]):
        self.loci = loci.reset_index(drop=True)
        self.probs = probs
        self.individuals = list(individuals)

    @property
    def n_loci(self) -> int:
        return len(self.loci)

    def subset_individuals(self, individuals: List[str]) -> "GenoProbs":
        index = [self.individuals.index(i) for i in individuals]
        return GenoProbs(self.loci, self.probs[:, index, :], individuals)

    def covariates(self, locus: int) -> np.ndarray:
        """Haley-Knott covariates (additive P1, additive P2, dominance) at one locus."""
        p = self.probs[locus]
        xp = p[:, 0] + p[:, 1] - p[:, 2] - p[:, 3]
        xq = p[:, 0] + p[:, 2] - p[:, 1] - p[:, 3]
        xpq = p[:, 0] - p[:, 1] - p[:, 2] + p[:, 3]
        return np.column_stack([xp, xq, xpq])

    def to_frame(self) -> pd.DataFrame:
        """Long table of probabilities (locus x individual)."""
        L, n, _ = self.probs.shape
        df = pd.DataFrame(self.probs.reshape(L * n, 4), columns=list(STATES))
        df.insert(0, "individual", np.tile(self.individuals, L))
        df.insert(0, "locus", np.repeat(self.loci["locus"].to_numpy(), n))
        return df


def locus_name(chrom: str, cm: float) -> str:
    return f"{chrom}_loc{round(float(cm), 2):g}"


def genoprob(linkage_map: LinkageMap, seg: SegregationData, step: float = 1.0) -> GenoProbs:
    """Compute 4-class genotype probabilities at markers and every ``step`` cM.

    Pseudo-markers falling on a marker position are dropped.
    """
    if step <= 0:
        raise ValueError("Step must be positive.")
    logger.info(f"Computing genotype probabilities (step {step} cM)...")
    loci_frames = []
    probs = []
    for chrom in linkage_map.chromosomes:
        table = linkage_map.chrom(chrom)
        names = table["marker"].tolist()
        absent = [m for m in names if m not in seg.calls.index]
        if absent:
            raise ValueError(f"Map markers missing from the segregation data: {absent[:5]}")
        marker_cm = table["cM"].to_numpy(dtype=float)
        grid = np.arange(0.0, marker_cm.max() + 1e-9, step)
        grid = grid[np.min(np.abs(grid[:, None] - marker_cm[None, :]), axis=1) > 1e-6]

        loci = pd.concat([
            pd.DataFrame({"cM": marker_cm, "marker": names, "is_marker": True}),
            pd.DataFrame({"cM": grid, "marker": None, "is_marker": False}),
        ], ignore_index=True)
        loci = loci.sort_values(["cM", "is_marker"], ascending=[True, False], kind="mergesort").reset_index(drop=True)
        loci["chrom"] = str(chrom)
        loci["locus"] = [
            m if is_marker else locus_name(chrom, cm)
            for m, cm, is_marker in zip(loci["marker"], loci["cM"], loci["is_marker"])
        ]

        emit = np.ones((len(loci), seg.n_ind, 4))
        marker_rows = np.where(loci["is_marker"].to_numpy())[0]
        marker_order = loci.loc[marker_rows, "marker"].tolist()
        calls = seg.calls.loc[marker_order].to_numpy().astype(np.int16)
        emit[marker_rows] = emissions(calls, linkage_map.haplotypes(marker_order), linkage_map.error)
        rf = cm_to_rf(np.diff(loci["cM"].to_numpy()), linkage_map.map_function)
        gamma, _, _ = forward_backward(emit, rf)

        loci_frames.append(loci[["chrom", "locus", "cM", "marker", "is_marker"]])
        probs.append(gamma)
    loci = pd.concat(loci_frames, ignore_index=True)
    logger.info(f"Genotype probabilities at {len(loci)} loci ({int(loci['is_marker'].sum())} markers).")
    return GenoProbs(loci, np.concatenate(probs, axis=0), seg.individuals)


# ------------------------
# regression helpers
# ------------------------

def _rss(X: np.ndarray, Y: np.ndarray) -> Tuple[np.ndarray, int]:
    beta, _, rank, _ = np.linalg.lstsq(X, Y, rcond=None)
    resid = Y - X @ beta
    return (resid ** 2).sum(axis=0), int(rank)


def _bic(rss: float, n: int, k: int) -> float:
    return n * np.log(rss / n) + k * np.log(n)


def _design(probs: GenoProbs, loci: List[int]) -> np.ndarray:
    n = len(probs.individuals)
    blocks = [np.ones((n, 1))] + [probs.covariates(l) for l in loci]
    return np.hstack(blocks)


def _window_cofactors(probs: GenoProbs, locus: int, cofactors: List[int], window: float) -> List[int]:
    chrom = probs.loci.at[locus, "chrom"]
    cm = probs.loci.at[locus, "cM"]
    kept = []
    for c in cofactors:
        if probs.loci.at[c, "chrom"] == chrom and abs(probs.loci.at[c, "cM"] - cm) < window:
            continue
        kept.append(c)
    return kept


def select_cofactors(probs: GenoProbs, y: np.ndarray, max_cofactors: Optional[int] = None) -> List[int]:
    """Forward selection of marker cofactors minimizing BIC.

    :return: locus indices of the selected markers, in order of entry
    """
    y = np.asarray(y, dtype=float)
    n = len(y)
    bound = int(np.floor(2 * np.sqrt(n)))
    if max_cofactors is not None:
        bound = min(bound, int(max_cofactors))
    candidates = [int(i) for i in np.where(probs.loci["is_marker"].to_numpy())[0]]

    selected: List[int] = []
    rss, rank = _rss(_design(probs, selected), y)
    best_bic = _bic(float(rss), n, rank)
    while len(selected) < bound:
        step_best = None
        for c in candidates:
            if c in selected:
                continue
            rss_c, rank_c = _rss(_design(probs, selected + [c]), y)
            if rank_c >= n:
                continue
            bic = _bic(float(rss_c), n, rank_c)
            if step_best is None or bic < step_best[0]:
                step_best = (bic, c)
        if step_best is None or step_best[0] >= best_bic:
            break
        best_bic = step_best[0]
        selected.append(step_best[1])
    logger.info(
        f"Selected {len(selected)} cofactor(s) (bound {bound}): "
        f"{[probs.loci.at[c, 'locus'] for c in selected]}"
    )
    return selected


def cim(probs: GenoProbs, Y: np.ndarray, cofactors: List[int], window: float = 10.0) -> np.ndarray:
    """Composite interval mapping by Haley-Knott regression.

    :param Y: (individuals,) or (individuals, columns) phenotypes
    :return: LOD scores, (loci,) or (loci, columns)
    """
    Y = np.asarray(Y, dtype=float)
    squeeze = Y.ndim == 1
    if squeeze:
        Y = Y[:, None]
    n = Y.shape[0]
    lod = np.empty((probs.n_loci, Y.shape[1]))
    null_rss: Dict[Tuple[int, ...], Tuple[np.ndarray, np.ndarray]] = {}
    for locus in range(probs.n_loci):
        cof = tuple(_window_cofactors(probs, locus, cofactors, window))
        if cof not in null_rss:
            X0 = _design(probs, list(cof))
            null_rss[cof] = (X0, _rss(X0, Y)[0])
        X0, rss0 = null_rss[cof]
        rss1, _ = _rss(np.hstack([X0, probs.covariates(locus)]), Y)
        with np.errstate(divide="ignore", invalid="ignore"):
            lod[locus] = np.where(rss1 > 0, n / 2.0 * np.log10(rss0 / rss1), 0.0)
    lod = np.maximum(lod, 0.0)
    return lod[:, 0] if squeeze else lod


def permutation_threshold(
    probs: GenoProbs,
    y: np.ndarray,
    cofactors: List[int],
    window: float = 10.0,
    n_perm: int = 1000,
    alpha: float = 0.05,
    seed: int = 42,
) -> Tuple[float, np.ndarray]:
    """Genome-wide LOD threshold from the max-LOD permutation distribution."""
    rng = np.random.default_rng(seed)
    y = np.asarray(y, dtype=float)
    Y = np.column_stack([rng.permutation(y) for _ in range(n_perm)])
    max_lod = cim(probs, Y, cofactors, window).max(axis=0)
    threshold = float(np.quantile(max_lod, 1.0 - alpha))
    logger.info(f"Permutation threshold ({n_perm} permutations, alpha={alpha}): LOD {threshold:.2f}")
    return threshold, max_lod


# class mean contrasts of ac, ad, bc, bd in terms of ap, aq, dpq
CLASS_CONTRASTS = np.array([
    [1.0, 1.0, 1.0],
    [1.0, -1.0, -1.0],
    [-1.0, 1.0, -1.0],
    [-1.0, -1.0, 1.0],
])
PATTERNS = {4: "1:1:1:1", 3: "1:2:1"}


def class_groups(params: pd.Series, bse: pd.Series, pvalues: pd.Series, alpha: float = 0.05) -> List[List[str]]:
    """Group the four QTL genotype classes whose means cannot be told apart.

    Effects that are not significant at ``alpha`` are set to zero. Classes
    adjacent in mean order join a group when their difference is below two
    standard errors of that difference.
    """
    effects = np.array([params[e] if pvalues[e] < alpha else 0.0 for e in EFFECTS], dtype=float)
    se = np.array([bse[e] for e in EFFECTS], dtype=float)
    means = CLASS_CONTRASTS @ effects
    order = np.argsort(means)
    groups = [[order[0]]]
    for prev, cur in zip(order[:-1], order[1:]):
        d = CLASS_CONTRASTS[cur] - CLASS_CONTRASTS[prev]
        if means[cur] - means[prev] < 2.0 * np.sqrt(np.sum(d ** 2 * se ** 2)):
            groups[-1].append(cur)
        else:
            groups.append([cur])
    return [[STATES[i] for i in g] for g in groups]


def segregation_pattern(params: pd.Series, bse: pd.Series, pvalues: pd.Series, alpha: float = 0.05) -> str:
    """Most likely segregation pattern of the QTL from its class means.

    Four distinct classes give 1:1:1:1, three give 1:2:1, a three-one split
    gives 3:1 and a two-two split (or no difference at all) gives 1:1.
    """
    sizes = sorted(len(g) for g in class_groups(params, bse, pvalues, alpha))
    if len(sizes) in PATTERNS:
        return PATTERNS[len(sizes)]
    if sizes == [1, 3]:
        return "3:1"
    return "1:1"


def support_interval(profile: pd.DataFrame, peak: int, lod_drop: float = 1.5) -> Tuple[float, float]:
    lod = profile["lod"].to_numpy()
    cm = profile["cM"].to_numpy()
    floor = lod[peak] - lod_drop
    left = peak
    while left > 0 and lod[left - 1] >= floor:
        left -= 1
    right = peak
    while right < len(lod) - 1 and lod[right + 1] >= floor:
        right += 1
    return float(cm[left]), float(cm[right])


def characterize_peaks(
    probs: GenoProbs,
    y: np.ndarray,
    profile: pd.DataFrame,
    threshold: float,
    cofactors: List[int],
    window: float = 10.0,
    lod_drop: float = 1.5,
) -> pd.DataFrame:
    """Describe successive per-chromosome LOD maxima above the threshold."""
    y = np.asarray(y, dtype=float)
    tss = float(((y - y.mean()) ** 2).sum())
    rows = []
    for chrom, chrom_profile in profile.groupby("chrom", sort=False):
        chrom_profile = chrom_profile.reset_index()
        available = np.ones(len(chrom_profile), dtype=bool)
        while available.any():
            lod = np.where(available, chrom_profile["lod"].to_numpy(), -np.inf)
            peak = int(np.argmax(lod))
            if lod[peak] < threshold:
                break
            cm = chrom_profile.at[peak, "cM"]
            available &= np.abs(chrom_profile["cM"].to_numpy() - cm) >= window

            locus = int(chrom_profile.at[peak, "index"])
            X0 = _design(probs, _window_cofactors(probs, locus, cofactors, window))
            X1 = np.hstack([X0, probs.covariates(locus)])
            names = ["const"] + [f"cof{i}" for i in range(X0.shape[1] - 1)] + list(EFFECTS)
            fit = sm.OLS(y, pd.DataFrame(X1, columns=names)).fit()
            rss0, _ = _rss(X0, y)
            left, right = support_interval(chrom_profile, peak, lod_drop)
            row = {
                "chrom": chrom,
                "locus": chrom_profile.at[peak, "locus"],
                "cM": float(cm),
                "lod": float(lod[peak]),
            }
            for e in EFFECTS:
                row[e] = float(fit.params[e])
                row[f"{e}_se"] = float(fit.bse[e])
                row[f"{e}_pvalue"] = float(fit.pvalues[e])
            row["pattern"] = segregation_pattern(fit.params, fit.bse, fit.pvalues)
            row["r2"] = 100.0 * (float(rss0) - float(fit.ssr)) / tss if tss > 0 else float("nan")
            row["ci_left"] = left
            row["ci_right"] = right
            rows.append(row)
    columns = ["chrom", "locus", "cM", "lod"]
    for e in EFFECTS:
        columns += [e, f"{e}_se", f"{e}_pvalue"]
    columns += ["pattern", "r2", "ci_left", "ci_right"]
    return pd.DataFrame(rows, columns=columns)


class QTLResult:
    def __init__(self, trait: str, profile: pd.DataFrame, peaks: pd.DataFrame, threshold: float, cofactors: List[str], n: int):
        self.trait = trait
        self.profile = profile
        self.peaks = peaks
        self.threshold = threshold
        self.cofactors = cofactors
        self.n = n


class QTL:
    def __init__(
        self,
        step: float = 1.0,
        window: float = 10.0,
        max_cofactors: Optional[int] = None,
        n_perm: int = 1000,
        alpha: float = 0.05,
        seed: int = 42,
        lod_drop: float = 1.5,
        cache: Optional[ArtifactCache] = None,
    ):
        """
        Initialize the composite interval mapping analysis.

        :param step: Pseudo-marker spacing (cM)
        :param window: Cofactor exclusion window around the tested locus (cM)
        :param max_cofactors: Optional cap on cofactors below floor(2 * sqrt(n))
        :param n_perm: Number of permutations for the genome-wide threshold
        :param alpha: Genome-wide significance level
        :param cache: Artifact cache for permutation thresholds
        """
        self.step = step
        self.window = window
        self.max_cofactors = max_cofactors
        self.n_perm = n_perm
        self.alpha = alpha
        self.seed = seed
        self.lod_drop = lod_drop
        self.cache = cache or ArtifactCache()

    def scan_trait(self, probs: GenoProbs, phenotypes: pd.DataFrame, trait: str) -> QTLResult:
        """Run cofactor selection, CIM, permutation threshold and peak calling for one trait."""
        values = phenotypes[trait].dropna()
        individuals = [i for i in probs.individuals if i in values.index]
        if len(individuals) < 10:
            raise ValueError(
                f"Trait '{trait}': only {len(individuals)} progeny have both genotypes and phenotypes."
            )
        logger.info(f"Trait '{trait}': CIM on {len(individuals)} progeny...")
        sub = probs.subset_individuals(individuals)
        y = values.loc[individuals].to_numpy(dtype=float)

        cofactors = select_cofactors(sub, y, self.max_cofactors)
        lod = cim(sub, y, cofactors, self.window)
        profile = sub.loci.copy()
        profile["lod"] = lod

        key = fingerprint(trait, y, sub.loci, sub.probs, cofactors, self.window, self.n_perm, self.alpha, self.seed)
        threshold, _ = self.cache.get_or_compute(
            f"qtl_perm.{trait}", key,
            lambda: permutation_threshold(sub, y, cofactors, self.window, self.n_perm, self.alpha, self.seed),
        )
        peaks = characterize_peaks(sub, y, profile, threshold, cofactors, self.window, self.lod_drop)
        peaks.insert(0, "trait", trait)
        logger.info(f"Trait '{trait}': {len(peaks)} QTL above LOD {threshold:.2f}.")
        return QTLResult(trait, profile, peaks, threshold, [sub.loci.at[c, "locus"] for c in cofactors], len(y))

    def scan(self, probs: GenoProbs, phenotypes: pd.DataFrame, traits: Optional[List[str]] = None) -> Dict[str, QTLResult]:
        traits = traits or list(phenotypes.columns)
        missing = [t for t in traits if t not in phenotypes.columns]
        if missing:
            raise ValueError(f"Trait(s) not found in phenotype table: {missing}")
        return {trait: self.scan_trait(probs, phenotypes, trait) for trait in traits}

    def save(self, results: Dict[str, QTLResult], out_dir: str = ".", out_name: str = "fullsib") -> Tuple[str, str]:
        """
        Save LOD profiles, thresholds and QTL peaks.

        :param results: Per-trait scan results
        :param out_dir: Output directory
        :param out_name: Output file name prefix
        """
        os.makedirs(out_dir, exist_ok=True)
        profiles = []
        for trait, res in results.items():
            profile = res.profile.copy()
            profile.insert(0, "trait", trait)
            profile["threshold"] = res.threshold
            profiles.append(profile)
        profile_path = os.path.join(out_dir, f"{out_name}.lod.csv")
        pd.concat(profiles, ignore_index=True).to_csv(profile_path, index=False, float_format="%.6g")

        peaks = [res.peaks for res in results.values() if not res.peaks.empty]
        peaks_df = pd.concat(peaks, ignore_index=True) if peaks else pd.DataFrame(columns=["trait"])
        peaks_path = os.path.join(out_dir, f"{out_name}.qtl.csv")
        peaks_df.to_csv(peaks_path, index=False, float_format="%.6g")
        logger.info(f"Saved LOD profiles to {profile_path} and {len(peaks_df)} QTL to {peaks_path}.")
        return profile_path, peaks_path
