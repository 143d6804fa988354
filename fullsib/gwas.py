import os
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from panicle.association.farmcpu import PANICLE_FarmCPU
from panicle.association.glm import PANICLE_GLM
from panicle.association.mlm import PANICLE_MLM
from panicle.matrix.kinship import PANICLE_K_VanRaden
from panicle.matrix.pca import PANICLE_PCA
from panicle.utils.data_types import GenotypeMap, GenotypeMatrix

from fullsib.cache import ArtifactCache, fingerprint
from fullsib.geno import Genotypes, MISSING
from fullsib.log import logger


GENO_MISSING = -9
MODELS = ("GLM", "MLM", "FarmCPU")
RESULT_COLUMNS = ["marker", "chrom", "pos", "effect", "se", "pvalue", "significant"]
FARMCPU_BIN_SIZES = (500_000, 5_000_000, 50_000_000)
FARMCPU_BIN_METHODS = ("static", "EMMA", "FaST-LMM")


class GWASData:
    """Dosage matrix (individuals x markers), marker map and phenotypes on the same individuals."""

    def __init__(self, dosage: pd.DataFrame, snp_map: pd.DataFrame, phenotypes: pd.DataFrame):
        if list(dosage.columns) != list(snp_map.index):
            raise ValueError("Dosage columns and map markers are not in the same order.")
        if list(dosage.index) != list(phenotypes.index):
            raise ValueError("Dosage rows and phenotype rows are not in the same order.")
        self.dosage = dosage
        self.map = snp_map
        self.phenotypes = phenotypes

    @property
    def n_ind(self) -> int:
        return self.dosage.shape[0]

    @property
    def n_markers(self) -> int:
        return self.dosage.shape[1]

    def __repr__(self):
        return f"GWASData({self.n_ind} individuals x {self.n_markers} markers, traits={list(self.phenotypes.columns)})"


# ------------------------
# data bridge
# ------------------------

def dosage_matrix(geno: Genotypes) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Transpose calls to individuals x markers with -9 for missing."""
    calls = geno.calls.to_numpy().astype(np.int8)
    calls[calls == MISSING] = GENO_MISSING
    dosage = pd.DataFrame(calls.T, index=geno.samples, columns=geno.markers.index)
    dosage.index.name = "Taxa"
    snp_map = geno.markers[["chrom", "pos"]].copy()
    snp_map["chrom"] = snp_map["chrom"].astype(str)
    return dosage, snp_map


def align_individuals(dosage: pd.DataFrame, phenotypes: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Keep individuals that are both genotyped and phenotyped, in genotype order."""
    pheno_ids = set(str(i) for i in phenotypes.index)
    keep = [i for i in dosage.index if str(i) in pheno_ids]
    if not keep:
        raise ValueError("No individual is both genotyped and phenotyped; check that IDs match exactly.")
    phenotypes = phenotypes.copy()
    phenotypes.index = phenotypes.index.astype(str)
    logger.info(
        f"Aligned {len(keep)} individuals ({dosage.shape[0] - len(keep)} genotyped-only, "
        f"{len(pheno_ids) - len(keep)} phenotyped-only dropped)."
    )
    aligned = phenotypes.loc[keep]
    aligned.index.name = "Taxa"
    return dosage.loc[keep], aligned


def marker_stats(dosage: pd.DataFrame) -> pd.DataFrame:
    values = dosage.to_numpy().astype(float)
    called = values != GENO_MISSING
    n_called = called.sum(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        freq = np.where(called, values, 0.0).sum(axis=0) / (2.0 * n_called)
    maf = np.minimum(freq, 1.0 - freq)
    return pd.DataFrame({
        "missing": 1.0 - n_called / values.shape[0],
        "maf": np.where(n_called > 0, maf, 0.0),
    }, index=dosage.columns)


def filter_markers(
    dosage: pd.DataFrame,
    snp_map: pd.DataFrame,
    max_missing: float = 0.1,
    min_maf: float = 0.05,
    impute: bool = True,
    fill_value: int = 1,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Filter markers by missing rate and MAF; optionally fill remaining gaps with a fixed value."""
    stats = marker_stats(dosage)
    keep = (stats["missing"] <= max_missing) & (stats["maf"] >= min_maf)
    logger.info(
        f"Marker filter (missing <= {max_missing}, MAF >= {min_maf}): kept {int(keep.sum())} of {len(keep)} "
        f"({int((stats['missing'] > max_missing).sum())} failed missing, {int((stats['maf'] < min_maf).sum())} failed MAF)."
    )
    if not keep.any():
        raise ValueError("No markers left after missing-rate and MAF filtering.")
    dosage = dosage.loc[:, keep.to_numpy()].copy()
    snp_map = snp_map.loc[dosage.columns]
    if impute:
        n_missing = int((dosage == GENO_MISSING).to_numpy().sum())
        if n_missing:
            dosage = dosage.replace(GENO_MISSING, fill_value)
            logger.info(f"Imputed {n_missing} missing calls with {fill_value}.")
    return dosage, snp_map


def write_gwas_inputs(data: GWASData, prefix: str) -> Dict[str, str]:
    """Write genotype, individual, map and phenotype files plus a binary genotype store."""
    os.makedirs(os.path.dirname(prefix) or ".", exist_ok=True)
    paths = {
        "geno": f"{prefix}.geno.txt",
        "ind": f"{prefix}.geno.ind",
        "map": f"{prefix}.geno.map",
        "phe": f"{prefix}.phe",
        "bin": f"{prefix}.geno.npy",
    }
    data.dosage.T.to_csv(paths["geno"], sep="\t", header=False, index=False)
    with open(paths["ind"], "w", encoding="utf-8") as w:
        w.write("\n".join(str(i) for i in data.dosage.index) + "\n")
    snp_map = pd.DataFrame({
        "SNP": data.map.index,
        "CHROM": data.map["chrom"].to_numpy(),
        "POS": data.map["pos"].to_numpy(),
    })
    snp_map.to_csv(paths["map"], sep="\t", index=False)
    data.phenotypes.reset_index().rename(columns={data.phenotypes.index.name or "index": "Taxa"}).to_csv(
        paths["phe"], sep="\t", index=False, na_rep="NA"
    )
    np.save(paths["bin"], data.dosage.to_numpy().astype(np.int8))
    logger.info(f"GWAS inputs ({data.n_ind} individuals x {data.n_markers} markers) written with prefix {prefix}")
    return paths


def read_gwas_inputs(prefix: str) -> GWASData:
    """Read files written by :func:`write_gwas_inputs`; the binary store is preferred when present."""
    for suffix in (".geno.ind", ".geno.map", ".phe"):
        if not os.path.isfile(prefix + suffix):
            raise FileNotFoundError(f"GWAS input not found: {prefix + suffix}")
    with open(prefix + ".geno.ind", "r", encoding="utf-8") as handle:
        individuals = [line.strip() for line in handle if line.strip()]
    snp_map = pd.read_csv(prefix + ".geno.map", sep="\t", dtype={"SNP": str, "CHROM": str})
    snp_map = snp_map.rename(columns={"CHROM": "chrom", "POS": "pos"}).set_index("SNP")
    snp_map.index.name = "marker"

    if os.path.isfile(prefix + ".geno.npy"):
        values = np.load(prefix + ".geno.npy")
    elif os.path.isfile(prefix + ".geno.txt"):
        values = pd.read_csv(prefix + ".geno.txt", sep="\t", header=None).to_numpy().T
    else:
        raise FileNotFoundError(f"No genotype matrix found for prefix {prefix}")
    if values.shape != (len(individuals), len(snp_map)):
        raise ValueError(
            f"Genotype matrix shape {values.shape} does not match {len(individuals)} individuals "
            f"x {len(snp_map)} markers."
        )
    dosage = pd.DataFrame(values, index=pd.Index(individuals, name="Taxa"), columns=snp_map.index)
    phenotypes = pd.read_csv(prefix + ".phe", sep="\t", dtype={"Taxa": str}).set_index("Taxa")
    return GWASData(dosage, snp_map, phenotypes.loc[individuals])


def prepare(geno: Genotypes, phenotypes: pd.DataFrame, max_missing: float = 0.1, min_maf: float = 0.05,
            impute: bool = True, fill_value: int = 1) -> GWASData:
    dosage, snp_map = dosage_matrix(geno)
    dosage, phenotypes = align_individuals(dosage, phenotypes)
    dosage, snp_map = filter_markers(dosage, snp_map, max_missing, min_maf, impute, fill_value)
    return GWASData(dosage, snp_map, phenotypes)


# ------------------------
# driver inputs
# ------------------------

def _genotype_matrix(G) -> GenotypeMatrix:
    values = np.ascontiguousarray(np.asarray(G), dtype=np.int8)
    return GenotypeMatrix(values, is_imputed=not (values == GENO_MISSING).any(), precompute_alleles=False)


def _phenotype_array(y: np.ndarray) -> np.ndarray:
    # [ID, value] with positional IDs
    return np.column_stack([np.arange(len(y)), y]).astype(float)


def _genotype_map(snp_map: pd.DataFrame) -> GenotypeMap:
    """Map with numeric chromosome codes in map order."""
    codes, _ = pd.factorize(snp_map["chrom"].astype(str))
    return GenotypeMap(pd.DataFrame({
        "SNP": [str(m) for m in snp_map.index],
        "CHROM": codes + 1,
        "POS": snp_map["pos"].to_numpy().astype(np.int64),
    }))


def _result_frame(res, index=None) -> pd.DataFrame:
    pvalues = np.asarray(res.pvalues, dtype=float)
    if pvalues.ndim == 2:
        pvalues = pvalues[:, 0]
    return pd.DataFrame({
        "effect": np.asarray(res.effects, dtype=float),
        "se": np.asarray(res.se, dtype=float),
        "pvalue": pvalues,
    }, index=index)


def _covariates(covariates: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if covariates is None or np.size(covariates) == 0:
        return None
    return np.asarray(covariates, dtype=float)


# ------------------------
# relationship and structure
# ------------------------

def kinship(G) -> np.ndarray:
    """VanRaden genomic relationship matrix."""
    return np.asarray(PANICLE_K_VanRaden(_genotype_matrix(G), verbose=False).to_numpy(), dtype=float)


def principal_components(G, n: int = 3) -> np.ndarray:
    if n <= 0:
        return np.zeros((np.shape(G)[0], 0))
    return np.asarray(PANICLE_PCA(M=_genotype_matrix(G), pcs_keep=n, verbose=False), dtype=float)


# ------------------------
# association models
# ------------------------

def glm(y, G, covariates: Optional[np.ndarray] = None, fill_value: float = 1.0) -> pd.DataFrame:
    """General linear model marker scan (effect, se, pvalue per marker column)."""
    y = np.asarray(y, dtype=float)
    res = PANICLE_GLM(phe=_phenotype_array(y), geno=_genotype_matrix(G), CV=_covariates(covariates),
                      verbose=False, missing_fill_value=fill_value)
    return _result_frame(res, G.columns if isinstance(G, pd.DataFrame) else None)


def mlm(y, G, K: np.ndarray, covariates: Optional[np.ndarray] = None) -> pd.DataFrame:
    """Mixed linear model scan with the kinship matrix as random-effect covariance."""
    y = np.asarray(y, dtype=float)
    res = PANICLE_MLM(phe=_phenotype_array(y), geno=_genotype_matrix(G), CV=_covariates(covariates),
                      K=np.asarray(K, dtype=float), verbose=False)
    return _result_frame(res, G.columns if isinstance(G, pd.DataFrame) else None)


def farmcpu(
    y,
    G,
    snp_map: pd.DataFrame,
    covariates: Optional[np.ndarray] = None,
    max_loop: int = 10,
    qtn_threshold: float = 0.01,
    p_threshold: Optional[float] = None,
    bin_sizes: Sequence[int] = FARMCPU_BIN_SIZES,
    method_bin: str = "static",
) -> pd.DataFrame:
    """FarmCPU: alternate fixed-effect rescans and binned pseudo-QTN selection.

    The selected pseudo-QTNs of the last loop are kept in ``attrs["pseudo_qtns"]``.
    """
    if method_bin not in FARMCPU_BIN_METHODS:
        raise ValueError(f"Unknown FarmCPU bin method '{method_bin}'. Choose from {FARMCPU_BIN_METHODS}")
    y = np.asarray(y, dtype=float)
    res = PANICLE_FarmCPU(
        phe=_phenotype_array(y),
        geno=_genotype_matrix(G),
        map_data=_genotype_map(snp_map),
        CV=_covariates(covariates),
        maxLoop=max_loop,
        p_threshold=p_threshold,
        QTN_threshold=qtn_threshold,
        bin_size=[int(b) for b in bin_sizes],
        method_bin=method_bin,
        verbose=False,
    )
    result = _result_frame(res, G.columns if isinstance(G, pd.DataFrame) else None)
    names = list(snp_map.index)
    result.attrs["pseudo_qtns"] = [names[i] for i in getattr(PANICLE_FarmCPU, "last_selected_qtns", [])]
    logger.info(f"FarmCPU selected {len(result.attrs['pseudo_qtns'])} pseudo-QTN(s): {result.attrs['pseudo_qtns']}")
    return result


def permutation_threshold(y, G, covariates: Optional[np.ndarray] = None, n_perm: int = 100,
                          alpha: float = 0.05, seed: int = 42) -> float:
    """Genome-wide p-value threshold from the GLM minimum-p permutation distribution."""
    rng = np.random.default_rng(seed)
    y = np.asarray(y, dtype=float)
    geno = _genotype_matrix(G)
    cov = _covariates(covariates)
    min_p = np.empty(n_perm)
    for k in range(n_perm):
        perm = rng.permutation(len(y))
        res = PANICLE_GLM(phe=_phenotype_array(y[perm]), geno=geno,
                          CV=None if cov is None else cov[perm], verbose=False)
        min_p[k] = np.nanmin(_result_frame(res)["pvalue"].to_numpy())
    threshold = float(np.quantile(min_p, alpha))
    logger.info(f"GLM permutation threshold ({n_perm} permutations, alpha={alpha}): p < {threshold:.3g}")
    return threshold


# ------------------------
# driver
# ------------------------

class GWAS:
    def __init__(
        self,
        models: Sequence[str] = MODELS,
        n_pcs: Optional[Dict[str, int]] = None,
        n_perm: int = 100,
        alpha: float = 0.05,
        seed: int = 42,
        max_loop: int = 10,
        method_bin: str = "static",
        cache: Optional[ArtifactCache] = None,
    ):
        """
        Initialize the GWAS driver.

        :param models: Association models to run, any of GLM, MLM, FarmCPU
        :param n_pcs: Principal components used as covariates per model
        :param n_perm: Permutations for the significance threshold
        :param alpha: Genome-wide significance level
        :param max_loop: Maximum FarmCPU loops
        :param method_bin: FarmCPU bin selection, one of static, EMMA, FaST-LMM
        :param cache: Artifact cache for permutation thresholds
        """
        unknown = [m for m in models if m not in MODELS]
        if unknown:
            raise ValueError(f"Unknown GWAS model(s): {unknown}. Choose from {MODELS}")
        if method_bin not in FARMCPU_BIN_METHODS:
            raise ValueError(f"Unknown FarmCPU bin method '{method_bin}'. Choose from {FARMCPU_BIN_METHODS}")
        self.models = list(models)
        self.n_pcs = {"GLM": 5, "MLM": 3, "FarmCPU": 3}
        self.n_pcs.update(n_pcs or {})
        self.n_perm = n_perm
        self.alpha = alpha
        self.seed = seed
        self.max_loop = max_loop
        self.method_bin = method_bin
        self.cache = cache or ArtifactCache()

    def threshold(self, trait: str, y: np.ndarray, G: pd.DataFrame, cov: Optional[np.ndarray]) -> float:
        n_cov = 0 if cov is None else cov.shape[1]
        key = fingerprint(trait, y, G, cov, self.n_perm, self.alpha, self.seed)
        return self.cache.get_or_compute(
            f"gwas_perm.{trait}.pc{n_cov}", key,
            lambda: permutation_threshold(y, G, cov, self.n_perm, self.alpha, self.seed),
        )

    def run_trait(self, data: GWASData, trait: str, K: np.ndarray, pcs: np.ndarray) -> Dict[str, pd.DataFrame]:
        values = pd.to_numeric(data.phenotypes[trait], errors="coerce")
        rows = np.where(values.notna().to_numpy())[0]
        if len(rows) < 10:
            raise ValueError(f"Trait '{trait}': only {len(rows)} individuals with phenotypes.")
        y = values.to_numpy()[rows]
        G = data.dosage.iloc[rows]
        logger.info(f"Trait '{trait}': GWAS on {len(rows)} individuals and {data.n_markers} markers.")

        # models sharing a PC count share one permutation threshold
        thresholds: Dict[int, float] = {}
        results = {}
        for model in self.models:
            n_pc = self.n_pcs[model]
            cov = pcs[rows, :n_pc] if n_pc > 0 else None
            if n_pc not in thresholds:
                thresholds[n_pc] = self.threshold(trait, y, G, cov)
            threshold = thresholds[n_pc]
            logger.info(f"Trait '{trait}': running {model} with {n_pc} PC(s)...")
            if model == "GLM":
                res = glm(y, G, cov)
            elif model == "MLM":
                res = mlm(y, G, K[np.ix_(rows, rows)], cov)
            else:
                res = farmcpu(y, G, data.map, cov, max_loop=self.max_loop, method_bin=self.method_bin)
            table = pd.DataFrame({
                "marker": data.map.index,
                "chrom": data.map["chrom"].to_numpy(),
                "pos": data.map["pos"].to_numpy(),
                "effect": res["effect"].to_numpy(),
                "se": res["se"].to_numpy(),
                "pvalue": res["pvalue"].to_numpy(),
            })
            table["significant"] = table["pvalue"] <= threshold
            table.attrs["threshold"] = threshold
            logger.info(f"Trait '{trait}' {model}: {int(table['significant'].sum())} significant marker(s).")
            results[model] = table
        return results

    def run(self, data: GWASData, traits: Optional[List[str]] = None) -> Dict[str, Dict[str, pd.DataFrame]]:
        traits = traits or list(data.phenotypes.columns)
        missing = [t for t in traits if t not in data.phenotypes.columns]
        if missing:
            raise ValueError(f"Trait(s) not found in phenotype table: {missing}")
        logger.info("Computing kinship and principal components...")
        K = kinship(data.dosage)
        pcs = principal_components(data.dosage, max(self.n_pcs[m] for m in self.models))
        return {trait: self.run_trait(data, trait, K, pcs) for trait in traits}

    def save(self, results: Dict[str, Dict[str, pd.DataFrame]], out_dir: str = ".", out_name: str = "fullsib") -> pd.DataFrame:
        """Write full and significant-marker tables per trait and model; return a signal summary."""
        os.makedirs(out_dir, exist_ok=True)
        summary = []
        for trait, by_model in results.items():
            for model, table in by_model.items():
                base = os.path.join(out_dir, f"{out_name}.{trait}.{model}")
                table[RESULT_COLUMNS].to_csv(f"{base}.gwas.csv", index=False, float_format="%.6g")
                signals = table[table["significant"]]
                signals[RESULT_COLUMNS].to_csv(f"{base}.signals.csv", index=False, float_format="%.6g")
                summary.append({
                    "trait": trait,
                    "model": model,
                    "threshold": table.attrs.get("threshold"),
                    "n_significant": len(signals),
                    "min_pvalue": float(table["pvalue"].min()),
                })
                logger.info(f"Saved {model} results for '{trait}' to {base}.gwas.csv ({len(signals)} signals).")
        summary_df = pd.DataFrame(summary)
        summary_df.to_csv(os.path.join(out_dir, f"{out_name}.gwas_summary.csv"), index=False)
        return summary_df
