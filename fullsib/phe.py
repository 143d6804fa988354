import os
import re
import math
import warnings
import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Tuple

import statsmodels.formula.api as smf
from statsmodels.regression.mixed_linear_model import MixedLM, VCSpec
from scipy import stats as sstats

from fullsib.log import logger
from fullsib.viz import Visualizer


# Level assigned to progeny in the check:genotype fixed term, and to checks
# in the progeny genotype random term.
PROGENY_LEVEL = "_progeny"
CHECK_LEVEL = "_check"

_GENOTYPE_LABEL = re.compile(r"^genotype\[C\(prog_geno\)\[(.+)\]:progeny\]$")


# ------------------------
# Helpers
# ------------------------

def _infer_sep_from_ext(path: str, fallback: str = "\t") -> str:
	lower = (path or "").lower()
	if lower.endswith(".csv"):
		return ","
	# default treat .tsv/.txt as tab
	return fallback


def _normalize_sep(sep: Optional[str], path: Optional[str]) -> str:
	if sep in (None, "auto"):
		return _infer_sep_from_ext(path or "")
	if sep.lower() in {"csv", ","}:
		return ","
	if sep.lower() in {"tsv", "tab", "\t"}:
		return "\t"
	# allow custom single-char
	return sep


def _read_table(path: str, sep: Optional[str] = None, header: bool = True, encoding: str = "utf-8") -> pd.DataFrame:
	use_sep = _normalize_sep(sep, path)
	try:
		df = pd.read_csv(path, sep=use_sep, header=0 if header else None, encoding=encoding)
	except Exception as e:
		raise ValueError(f"Failed to read table: {path} ({e})") from e
	return df


def _write_table(df: pd.DataFrame, path: str, sep: Optional[str] = None, header: bool = True, index: bool = False, encoding: str = "utf-8"):
	os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
	use_sep = _normalize_sep(sep, path)
	df.to_csv(path, sep=use_sep, header=header, index=index, encoding=encoding)


# ------------------------
# load / clean
# ------------------------

def read_phenotypes(path: str, sep: Optional[str] = None, encoding: str = "utf-8") -> pd.DataFrame:
	"""Read the trial phenotype table (one row per plot)."""
	if not os.path.isfile(path):
		raise FileNotFoundError(f"Phenotype file not found: {path}")
	df = _read_table(path, sep=sep, header=True, encoding=encoding)
	logger.info(f"Loaded {len(df)} plots with {df.shape[1]} columns from {path}")
	return df


def clean_phenotypes(
	df: pd.DataFrame,
	traits: List[str],
	trial_col: str = "trial",
	rep_col: str = "rep",
	row_col: str = "row",
	col_col: str = "col",
	genotype_col: str = "genotype",
	progeny_prefix: str = "C4",
) -> pd.DataFrame:
	"""Type the design factors and flag checks vs progeny.

	A genotype label starting with ``progeny_prefix`` is progeny of the
	population under study; any other label is a check clone. The returned
	table carries ``progeny`` and ``check`` indicator columns that sum to 1.
	"""
	design = [trial_col, rep_col, row_col, col_col, genotype_col]
	missing = [c for c in design + list(traits) if c not in df.columns]
	if missing:
		raise ValueError(f"Phenotype table is missing required column(s): {missing}")
	if not traits:
		raise ValueError("At least one trait column is required.")

	out = df.copy()
	for col in design:
		out[col] = out[col].astype(str).str.strip().astype("category")
	for trait in traits:
		out[trait] = pd.to_numeric(out[trait], errors="coerce")

	labels = out[genotype_col].astype(str)
	out["progeny"] = labels.str.startswith(progeny_prefix).astype(int)
	out["check"] = 1 - out["progeny"]

	dup = out.duplicated(subset=[trial_col, row_col, col_col], keep=False)
	if dup.any():
		logger.warning(
			f"{int(dup.sum())} plots share (row, col) coordinates within a trial; spatial terms may be confounded."
		)

	logger.info(
		f"Cleaned phenotypes: {out[genotype_col].nunique()} genotypes "
		f"({int(out.loc[out['progeny'] == 1, genotype_col].nunique())} progeny, "
		f"{int(out.loc[out['check'] == 1, genotype_col].nunique())} checks) "
		f"across {out[trial_col].nunique()} trial(s)."
	)
	return out


# ------------------------
# mixed model
# ------------------------

class MixedModelFit:
	"""Variance components, heritability and genotype predictions for one trait."""

	def __init__(self, trait: str, result, formula: str, vc_formula: Dict[str, str],
				 vcomp: Dict[str, float], ve_by_trial: Dict[str, float],
				 blups: pd.DataFrame, n_plots: int):
		self.trait = trait
		self.result = result
		self.formula = formula
		self.vc_formula = vc_formula
		self.vcomp = vcomp
		self.ve_by_trial = ve_by_trial
		self.blups = blups
		self.n_plots = n_plots

	@property
	def vg(self) -> float:
		return float(self.vcomp.get("genotype", 0.0))

	@property
	def ve(self) -> float:
		return float(np.mean(list(self.ve_by_trial.values())))

	@property
	def h2(self) -> float:
		denom = self.vg + self.ve
		if denom <= 0:
			return float("nan")
		return self.vg / denom

	@property
	def converged(self) -> bool:
		return bool(getattr(self.result, "converged", True))

	def fixed_effects(self) -> pd.DataFrame:
		fe = self.result.fe_params
		bse = self.result.bse_fe
		return pd.DataFrame({"term": fe.index, "estimate": fe.values, "se": bse.reindex(fe.index).values})

	def summary(self) -> dict:
		row = {
			"trait": self.trait,
			"vg": self.vg,
			"ve_mean": self.ve,
			"h2": self.h2,
			"n_plots": self.n_plots,
			"n_genotypes": len(self.blups),
			"converged": self.converged,
		}
		for name, value in self.vcomp.items():
			if name != "genotype":
				row[f"v_{name}"] = float(value)
		for trial, value in self.ve_by_trial.items():
			row[f"ve_{trial}"] = float(value)
		return row


def _model_frame(df: pd.DataFrame, trait: str, trial_col: str, row_col: str, col_col: str, genotype_col: str) -> pd.DataFrame:
	if "progeny" not in df.columns:
		raise ValueError("Phenotype table has no 'progeny' column; run clean_phenotypes first.")
	mdf = pd.DataFrame({
		"y": pd.to_numeric(df[trait], errors="coerce"),
		"trial": df[trial_col].astype(str),
		"row": df[row_col].astype(str),
		"col": df[col_col].astype(str),
		"genotype": df[genotype_col].astype(str),
		"progeny": df["progeny"].astype(int),
	}).dropna(subset=["y"]).reset_index(drop=True)
	is_prog = mdf["progeny"] == 1
	mdf["check_geno"] = np.where(is_prog, PROGENY_LEVEL, mdf["genotype"])
	mdf["prog_geno"] = np.where(is_prog, mdf["genotype"], CHECK_LEVEL)
	mdf["trial_row"] = mdf["trial"] + "_" + mdf["row"]
	mdf["trial_col"] = mdf["trial"] + "_" + mdf["col"]
	mdf["group"] = 1
	return mdf


def _weighted_model(base, groups: np.ndarray, w: np.ndarray) -> MixedLM:
	"""Copy of a formula-built MixedLM with every row scaled by ``w``."""
	vcs = base.exog_vc
	mats = [[np.asarray(m) * w[:, None] for m in group_mats] for group_mats in vcs.mats]
	exog = pd.DataFrame(base.exog * w[:, None], columns=base.exog_names)
	endog = pd.Series(base.endog * w, name=base.endog_names)
	return MixedLM(endog, exog, groups=groups, exog_re=np.zeros((len(w), 0)),
				   exog_vc=VCSpec(vcs.names, vcs.colnames, mats))


def _fit(model, trait: str):
	with warnings.catch_warnings(record=True) as caught:
		warnings.simplefilter("always")
		result = model.fit(reml=True, method=["lbfgs", "powell"])
	for w in caught:
		logger.warning(f"Trait '{trait}': {w.message}")
	return result


def fit_mixed_model(
	df: pd.DataFrame,
	trait: str,
	trial_col: str = "trial",
	row_col: str = "row",
	col_col: str = "col",
	genotype_col: str = "genotype",
	max_iter: int = 20,
	tol: float = 0.01,
) -> MixedModelFit:
	"""Fit the spatial mixed model for one trait with statsmodels MixedLM (REML).

	Fixed: trial + check:genotype. Random: progeny genotype, row within trial
	and column within trial. Residual variances are heterogeneous per trial:
	each trial's rows are weighted by 1/sqrt of its relative residual
	variance, and the relative variances are re-estimated from the
	conditional residuals until they change by less than ``tol`` (log scale).
	"""
	mdf = _model_frame(df, trait, trial_col, row_col, col_col, genotype_col)
	n_prog = mdf.loc[mdf["progeny"] == 1, "genotype"].nunique()
	if n_prog < 2:
		raise ValueError(f"Trait '{trait}': not enough progeny genotypes ({n_prog}) to fit a genetic variance.")

	terms = []
	if mdf["trial"].nunique() > 1:
		terms.append("C(trial)")
	if mdf["check_geno"].nunique() > 1:
		terms.append("C(check_geno)")
	formula = "y ~ " + (" + ".join(terms) if terms else "1")

	vc = {"genotype": "0 + C(prog_geno):progeny"}
	if mdf["trial_row"].nunique() > 1:
		vc["row"] = "0 + C(trial_row)"
	if mdf["trial_col"].nunique() > 1:
		vc["col"] = "0 + C(trial_col)"

	logger.info(f"Fitting mixed model for '{trait}': {formula}; random: {', '.join(vc)}")
	base = smf.mixedlm(formula, mdf, groups="group", re_formula="0", vc_formula=vc)
	trials = mdf["trial"].to_numpy()
	levels = sorted(set(trials))
	rel = {t: 1.0 for t in levels}
	result = _fit(base, trait)
	w = np.ones(len(mdf))

	if len(levels) > 1:
		for it in range(1, max_iter + 1):
			resid = np.asarray(result.resid, dtype=float) / w
			ms = {t: float(np.mean(resid[trials == t] ** 2)) for t in levels}
			if min(ms.values()) <= 0:
				logger.warning(f"Trait '{trait}': zero residuals in a trial; keeping homogeneous residual variance.")
				break
			geo = math.exp(np.mean([math.log(ms[t]) for t in levels]))
			new_rel = {t: ms[t] / geo for t in levels}
			change = max(abs(math.log(new_rel[t] / rel[t])) for t in levels)
			rel = new_rel
			w = 1.0 / np.sqrt(np.array([rel[t] for t in trials]))
			result = _fit(_weighted_model(base, mdf["group"].to_numpy(), w), trait)
			if change < tol:
				logger.info(f"Trait '{trait}': residual variance ratios converged after {it} iteration(s).")
				break
		else:
			logger.warning(f"Trait '{trait}': residual variance ratios did not converge in {max_iter} iterations.")

	vcomp = dict(zip(base.exog_vc.names, np.asarray(result.vcomp, dtype=float)))
	ve_by_trial = {str(t): float(result.scale) * rel[t] for t in levels}

	blups = _extract_blups(result, mdf, vcomp.get("genotype", 0.0))
	fit = MixedModelFit(trait, result, formula, vc, vcomp, ve_by_trial, blups, len(mdf))
	logger.info(f"Trait '{trait}': Vg={fit.vg:.4g}, mean Ve={fit.ve:.4g}, H2={fit.h2:.3f}")
	return fit


def _extract_blups(result, mdf: pd.DataFrame, vg: float) -> pd.DataFrame:
	group = next(iter(result.random_effects))
	ranef = result.random_effects[group]
	ranef_cov = result.random_effects_cov[group]

	fe = result.fe_params
	trial_effects = [v for k, v in fe.items() if k.startswith("C(trial)[T.")]
	n_trials = mdf["trial"].nunique()
	mean = float(fe.get("Intercept", 0.0))
	mean += float(np.sum(trial_effects)) / n_trials
	mean += float(fe.get(f"C(check_geno)[T.{PROGENY_LEVEL}]", 0.0))

	rows = []
	for label, value in ranef.items():
		match = _GENOTYPE_LABEL.match(str(label))
		if match is None or match.group(1) == CHECK_LEVEL:
			continue
		pev = float(ranef_cov.loc[label, label])
		reliability = 1.0 - pev / vg if vg > 0 else float("nan")
		deregressed = mean + value / reliability if reliability >= 0.01 else float("nan")
		rows.append({
			"genotype": match.group(1),
			"blup": float(value),
			"pev": pev,
			"reliability": reliability,
			"blue": mean + float(value),
			"deregressed": deregressed,
		})
	return pd.DataFrame(rows).set_index("genotype")


def estimate_blues(df: pd.DataFrame, traits: List[str], **columns) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, MixedModelFit]]:
	"""Fit every trait with the same model.

	:return: (long BLUE/BLUP table, heritability table, fits by trait)
	"""
	fits: Dict[str, MixedModelFit] = {}
	frames = []
	for trait in traits:
		fit = fit_mixed_model(df, trait, **columns)
		fits[trait] = fit
		frame = fit.blups.reset_index()
		frame.insert(1, "trait", trait)
		frames.append(frame)
	blues = pd.concat(frames, ignore_index=True)
	h2 = pd.DataFrame([fit.summary() for fit in fits.values()])
	return blues, h2, fits


def blues_wide(blues: pd.DataFrame, value_col: str = "blue") -> pd.DataFrame:
	"""Pivot the long BLUE table to genotype x trait."""
	if value_col not in blues.columns:
		raise ValueError(f"Column '{value_col}' not found in BLUE table: {list(blues.columns)}")
	wide = blues.pivot(index="genotype", columns="trait", values=value_col)
	wide.columns.name = None
	return wide


def write_blues(blues: pd.DataFrame, h2: pd.DataFrame, out_dir: str, out_name: str) -> Tuple[str, str]:
	blues_path = os.path.join(out_dir, f"{out_name}.blues.csv")
	h2_path = os.path.join(out_dir, f"{out_name}.h2.csv")
	_write_table(blues, blues_path, sep=",")
	_write_table(h2, h2_path, sep=",")
	logger.info(f"BLUEs saved to {blues_path}; heritability saved to {h2_path}")
	return blues_path, h2_path


def read_blues(path: str, value_col: str = "blue") -> pd.DataFrame:
	"""Read a BLUE/BLUP CSV and return the genotype x trait table."""
	if not os.path.isfile(path):
		raise FileNotFoundError(f"BLUE file not found: {path}")
	blues = _read_table(path, sep=",")
	required = {"genotype", "trait", value_col}
	if not required.issubset(blues.columns):
		raise ValueError(f"BLUE file must contain columns {sorted(required)}")
	blues["genotype"] = blues["genotype"].astype(str)
	return blues_wide(blues, value_col=value_col)


# ------------------------
# stat
# ------------------------

def _summarize_series(s: pd.Series) -> dict:
	s_num = pd.to_numeric(s, errors="coerce")
	n = int(s_num.shape[0])
	n_miss = int(s_num.isna().sum())
	n_notna = n - n_miss
	desc = s_num.describe(percentiles=[0.25, 0.5, 0.75])
	mean = float(desc["mean"]) if "mean" in desc and not math.isnan(desc["mean"]) else float("nan")
	std = float(desc["std"]) if "std" in desc and not math.isnan(desc["std"]) else float("nan")
	q1 = float(desc.get("25%", float("nan")))
	med = float(desc.get("50%", float("nan")))
	q3 = float(desc.get("75%", float("nan")))
	mn = float(desc.get("min", float("nan")))
	mx = float(desc.get("max", float("nan")))
	skew = float(s_num.skew()) if n_notna > 2 else float("nan")
	kurt = float(s_num.kurt()) if n_notna > 3 else float("nan")

	s_clean = s_num.dropna()
	n_clean = int(s_clean.shape[0])
	cv = float(std / abs(mean)) if (not math.isnan(std) and not math.isnan(mean) and abs(mean) > 1e-12) else float("nan")

	# Shapiro-Wilk: practical range 3 <= n <= 5000 to avoid warnings
	shapiro_stat = shapiro_p = float("nan")
	if 3 <= n_clean <= 5000 and s_clean.nunique() > 1:
		sh_stat, sh_p = sstats.shapiro(s_clean.values)
		shapiro_stat = float(sh_stat)
		shapiro_p = float(sh_p)

	return {
		"count": int(n),
		"non_missing": int(n_notna),
		"missing": int(n_miss),
		"missing_rate": (n_miss / n) if n > 0 else float("nan"),
		"mean": mean,
		"std": std,
		"cv": cv,
		"min": mn,
		"q1": q1,
		"median": med,
		"q3": q3,
		"max": mx,
		"skew": skew,
		"kurtosis": kurt,
		"shapiro_stat": shapiro_stat,
		"shapiro_p": shapiro_p,
	}


def trait_stats(df: pd.DataFrame, traits: List[str], by: Optional[str] = None) -> pd.DataFrame:
	"""Descriptive statistics per trait (optionally per trial)."""
	rows = []
	if by is None:
		for col in traits:
			rows.append({"trait": col, **_summarize_series(df[col])})
	else:
		for level, sub in df.groupby(by, observed=True):
			for col in traits:
				rows.append({"trait": col, by: level, **_summarize_series(sub[col])})
	return pd.DataFrame(rows)


def phe_stat(args):
	in_path = args.input
	if not os.path.isfile(in_path):
		raise ValueError(f"Input not found: {in_path}")

	df = _read_table(in_path, sep=args.sep, header=True)
	traits = [t.strip() for t in args.traits.split(",") if t.strip()]
	missing = [t for t in traits if t not in df.columns]
	if missing:
		raise ValueError(f"Trait column(s) not found: {missing}")

	stat_df = trait_stats(df, traits, by=args.by)

	out_dir = args.out_dir or "."
	os.makedirs(out_dir, exist_ok=True)
	out_name = args.out_name or "phe_stat"
	stats_path = os.path.join(out_dir, f"{out_name}.stats.tsv")
	_write_table(stat_df, stats_path, sep="\t", header=True)
	logger.info(f"Phenotype statistics saved to: {stats_path}")

	# plot
	try:
		viz = Visualizer()
		import matplotlib.pyplot as plt
		fig = plt.figure(figsize=(args.width, args.height))
		ax = fig.add_subplot(111)
		viz.plot_dist(df=df, columns=traits, bins=args.bins, ax=ax)
		fig_path = os.path.join(out_dir, f"{out_name}.{args.format}")
		plt.tight_layout()
		plt.savefig(fig_path, dpi=300, bbox_inches="tight")
		plt.close()
		logger.info(f"Phenotype distribution figure saved to: {fig_path}")
	except Exception as e:
		logger.warning(f"Plotting failed: {e}")
