import os
from typing import Any, Callable, Dict, Iterable, List, Optional

import networkx as nx
import matplotlib.pyplot as plt

from fullsib import geno as geno_mod
from fullsib import gwas as gwas_mod
from fullsib import linkage as linkage_mod
from fullsib import phe as phe_mod
from fullsib.cache import ArtifactCache, fingerprint
from fullsib.log import logger
from fullsib.qtl import QTL, genoprob
from fullsib.report import Report
from fullsib.viz import Visualizer


class ArtifactStore:
    """Write-once mapping of artifact name to value."""

    def __init__(self):
        self._items: Dict[str, Any] = {}

    def put(self, name: str, value: Any):
        if name in self._items:
            raise RuntimeError(f"Artifact '{name}' already exists and cannot be overwritten.")
        self._items[name] = value

    def get(self, name: str) -> Any:
        if name not in self._items:
            raise KeyError(f"Artifact '{name}' has not been produced yet.")
        return self._items[name]

    def __contains__(self, name: str) -> bool:
        return name in self._items

    def names(self) -> List[str]:
        return list(self._items)


class Pipeline:
    """Stage graph of the fullsib analysis.

    Each stage reads the artifacts of its predecessors and adds new ones to
    the store; stages run once, in topological order.
    """

    def __init__(self, config: Dict[str, Dict[str, Any]]):
        self.config = config
        out = config["output"]
        self.out_dir = out["out_dir"]
        self.out_name = out["out_name"]
        self.fmt = out["format"]
        self.cache = ArtifactCache(out["cache_dir"], recompute=out["recompute"])
        self.store = ArtifactStore()
        self.viz = Visualizer()
        self.graph = nx.DiGraph()
        self._stages: Dict[str, Callable[[], None]] = {}

        self.add_stage("phenotypes", self.run_phenotypes)
        self.add_stage("genotypes", self.run_genotypes)
        self.add_stage("family", self.run_family, after=["genotypes"])
        self.add_stage("linkage", self.run_linkage, after=["family"])
        self.add_stage("qtl", self.run_qtl, after=["linkage", "phenotypes"])
        self.add_stage("gwas", self.run_gwas, after=["genotypes", "phenotypes"])
        self.add_stage("report", self.run_report, after=["phenotypes", "linkage", "qtl", "gwas"])

    def add_stage(self, name: str, func: Callable[[], None], after: Iterable[str] = ()):
        self.graph.add_node(name)
        for dep in after:
            self.graph.add_edge(dep, name)
        if not nx.is_directed_acyclic_graph(self.graph):
            raise ValueError(f"Adding stage '{name}' creates a dependency cycle.")
        self._stages[name] = func

    def order(self, targets: Optional[List[str]] = None) -> List[str]:
        """Stages needed for ``targets`` (all stages by default) in execution order."""
        if targets is None:
            needed = set(self.graph.nodes)
        else:
            unknown = [t for t in targets if t not in self.graph]
            if unknown:
                raise ValueError(f"Unknown stage(s): {unknown}. Valid stages: {list(self.graph.nodes)}")
            needed = set(targets)
            for t in targets:
                needed |= nx.ancestors(self.graph, t)
        return [s for s in nx.lexicographical_topological_sort(self.graph) if s in needed]

    def run(self, targets: Optional[List[str]] = None) -> ArtifactStore:
        os.makedirs(self.out_dir, exist_ok=True)
        stages = self.order(targets)
        logger.info(f"Running stages: {' -> '.join(stages)}")
        for stage in stages:
            logger.info(f"=== Stage: {stage} ===")
            self._stages[stage]()
        return self.store

    def _path(self, suffix: str) -> str:
        return os.path.join(self.out_dir, f"{self.out_name}.{suffix}")

    def _require(self, section: str, key: str):
        value = self.config[section][key]
        if value in (None, "", []):
            raise ValueError(f"Config value '{section}.{key}' is required for this run.")
        return value

    # ------------------------
    # stages
    # ------------------------

    def run_phenotypes(self):
        cfg = self.config["phenotype"]
        path = self._require("input", "phenotypes")
        traits = self._require("phenotype", "traits")
        columns = {k: cfg[k] for k in ("trial_col", "rep_col", "row_col", "col_col", "genotype_col")}
        raw = phe_mod.read_phenotypes(path)
        clean = phe_mod.clean_phenotypes(raw, traits, progeny_prefix=cfg["progeny_prefix"], **columns)
        blues, h2, fits = phe_mod.estimate_blues(
            clean, traits,
            trial_col=cfg["trial_col"], row_col=cfg["row_col"], col_col=cfg["col_col"],
            genotype_col=cfg["genotype_col"],
        )
        phe_mod.write_blues(blues, h2, self.out_dir, self.out_name)
        self.store.put("phenotypes", clean)
        self.store.put("blues", blues)
        self.store.put("heritability", h2)

    def run_genotypes(self):
        vcf = self._require("input", "vcf")
        self.store.put("genotypes", geno_mod.read_vcf(vcf))

    def run_family(self):
        cfg = self.config["family"]
        if len(cfg["parents"]) != 2:
            raise ValueError("Config value 'family.parents' must list exactly two parents.")
        spec = geno_mod.FamilySpec(str(cfg["family"]), str(cfg["parents"][0]), str(cfg["parents"][1]))
        pedigree_path = self.config["input"]["pedigree"]
        pedigree = geno_mod.read_pedigree(pedigree_path) if pedigree_path else None
        family = geno_mod.extract_family(self.store.get("genotypes"), spec, pedigree)
        geno_mod.write_genotypes(family, self._path("family.tsv"))
        self.store.put("family", family)

    def run_linkage(self):
        cfg = self.config["linkage"]
        seg = linkage_mod.classify_markers(self.store.get("family"))
        linkage_mod.write_raw(seg, self._path("raw"))
        seg = linkage_mod.filter_missing(seg, cfg["missing_threshold"])
        seg_test = linkage_mod.test_segregation(seg, cfg["segregation_alpha"])
        seg_test.to_csv(self._path("segregation.csv"), index=False, float_format="%.6g")
        tp = linkage_mod.two_point(seg)
        check = linkage_mod.linkage_check(seg, tp, cfg["lod_threshold"], cfg["max_rf"])
        check.to_csv(self._path("linkage_check.csv"), index=False)

        params = {k: cfg[k] for k in ("tol", "error", "map_function", "max_iter")}
        key = fingerprint(seg.markers, seg.calls, params)
        linkage_map = self.cache.get_or_compute("linkage_map", key, lambda: linkage_mod.estimate_map(seg, **params))
        linkage_map.save(self.out_dir, self.out_name)

        fig, ax = plt.subplots(figsize=(max(4, len(linkage_map.chromosomes) * 0.6), 6))
        self.viz.plot_linkage_map(linkage_map.table, ax=ax)
        self.viz.save_figure(fig, self._path(f"map.{self.fmt}"))

        self.store.put("segregation", seg)
        self.store.put("segregation_test", seg_test)
        self.store.put("linkage_map", linkage_map)

    def run_qtl(self):
        cfg = self.config["qtl"]
        blues = phe_mod.blues_wide(self.store.get("blues"), value_col=cfg["value_col"])
        probs = genoprob(self.store.get("linkage_map"), self.store.get("segregation"), step=cfg["step"])
        scanner = QTL(
            step=cfg["step"], window=cfg["window"], max_cofactors=cfg["max_cofactors"],
            n_perm=cfg["n_perm"], alpha=cfg["alpha"], seed=cfg["seed"], lod_drop=cfg["lod_drop"],
            cache=self.cache,
        )
        results = scanner.scan(probs, blues)
        scanner.save(results, self.out_dir, self.out_name)
        for trait, res in results.items():
            fig, ax = plt.subplots(figsize=(12, 4))
            self.viz.plot_lod_profile(res.profile, res.threshold, res.peaks, title=f"{trait} CIM", ax=ax)
            self.viz.save_figure(fig, self._path(f"{trait}.lod.{self.fmt}"))
        self.store.put("qtl", results)

    def run_gwas(self):
        cfg = self.config["gwas"]
        blues = phe_mod.blues_wide(self.store.get("blues"), value_col=cfg["value_col"])
        data = gwas_mod.prepare(
            self.store.get("genotypes"), blues,
            max_missing=cfg["max_missing"], min_maf=cfg["min_maf"],
            impute=cfg["impute"], fill_value=cfg["fill_value"],
        )
        gwas_mod.write_gwas_inputs(data, os.path.join(self.out_dir, self.out_name))

        fig, ax = plt.subplots(figsize=(10, 5))
        self.viz.plot_snp_density(data.map, ax=ax)
        self.viz.save_figure(fig, self._path(f"density.{self.fmt}"))

        driver = gwas_mod.GWAS(
            models=cfg["models"], n_pcs=cfg["n_pcs"], n_perm=cfg["n_perm"], alpha=cfg["alpha"],
            seed=cfg["seed"], max_loop=cfg["max_loop"], method_bin=cfg["method_bin"], cache=self.cache,
        )
        results = driver.run(data)
        summary = driver.save(results, self.out_dir, self.out_name)
        for trait, by_model in results.items():
            for model, table in by_model.items():
                self.viz.gwas_plots(table, table.attrs.get("threshold"), self._path(f"{trait}.{model}"), self.fmt)
        self.store.put("gwas_data", data)
        self.store.put("gwas", results)
        self.store.put("gwas_summary", summary)

    def run_report(self):
        self.store.put("report", Report().render(self.out_dir, self.out_name))
