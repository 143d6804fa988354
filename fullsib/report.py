import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from jinja2 import Environment, FileSystemLoader, select_autoescape

from fullsib.log import logger


class Report:
    def __init__(self):
        """
        Initialize the run report renderer.
        """
        self.template_dir = Path(__file__).resolve().parent / "templates"
        self._env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            enable_async=False,
        )

    @staticmethod
    def _safe_float(value: Optional[float]) -> Optional[float]:
        if value is None or pd.isna(value):
            return None
        return float(value)

    @staticmethod
    def _read_optional(path: Path, **kwargs) -> pd.DataFrame:
        if not path.exists():
            logger.warning(f"Report input not found, section skipped: {path}")
            return pd.DataFrame()
        return pd.read_csv(path, **kwargs)

    def _records(self, df: pd.DataFrame, columns: List[str]) -> List[Dict[str, Any]]:
        if df.empty:
            return []
        columns = [c for c in columns if c in df.columns]
        records = []
        for row in df[columns].to_dict("records"):
            records.append({
                k: (self._safe_float(v) if isinstance(v, (float, np.floating)) else v)
                for k, v in row.items()
            })
        return records

    def _prepare_context(self, out_dir: str, out_name: str) -> Dict[str, Any]:
        base = Path(out_dir)
        h2 = self._read_optional(base / f"{out_name}.h2.csv")
        map_summary = self._read_optional(base / f"{out_name}.map_summary.csv", dtype={"chrom": str})
        peaks = self._read_optional(base / f"{out_name}.qtl.csv", dtype={"chrom": str})
        gwas = self._read_optional(base / f"{out_name}.gwas_summary.csv")

        figures = sorted(
            p.name for p in base.glob(f"{out_name}.*")
            if p.suffix.lower() in {".png", ".svg", ".jpg", ".pdf"}
        )

        summary = {
            "n_traits": int(len(h2)) if not h2.empty else 0,
            "n_chromosomes": int(len(map_summary)) if not map_summary.empty else 0,
            "n_map_markers": int(map_summary["n_markers"].sum()) if not map_summary.empty else 0,
            "map_length": self._safe_float(map_summary["length_cM"].sum()) if not map_summary.empty else None,
            "n_unconverged": int((~map_summary["converged"].astype(bool)).sum()) if not map_summary.empty else 0,
            "n_qtl": int(len(peaks)),
            "n_gwas_signals": int(gwas["n_significant"].sum()) if not gwas.empty else 0,
        }

        return {
            "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            "out_name": out_name,
            "summary": summary,
            "heritability": self._records(h2, ["trait", "vg", "ve_mean", "h2", "n_plots", "n_genotypes", "converged"]),
            "map_summary": self._records(map_summary, ["chrom", "n_markers", "length_cM", "iterations", "converged"]),
            "qtl": self._records(peaks, ["trait", "chrom", "locus", "cM", "lod", "ap", "aq", "dpq", "pattern", "r2", "ci_left", "ci_right"]),
            "gwas": self._records(gwas, ["trait", "model", "threshold", "n_significant", "min_pvalue"]),
            "figures": figures,
        }

    def render(self, out_dir: str = ".", out_name: str = "fullsib") -> str:
        """Render ``<out_name>.report.html`` from the stage outputs found in ``out_dir``."""
        if not (self.template_dir / "report.html").exists():
            raise FileNotFoundError(
                f"Report template not found at {self.template_dir / 'report.html'}."
            )
        context = self._prepare_context(out_dir, out_name)
        template = self._env.get_template("report.html")
        html_content = template.render(**context)

        os.makedirs(out_dir, exist_ok=True)
        summary_path = Path(out_dir) / f"{out_name}.report_summary.csv"
        pd.DataFrame([context["summary"]]).to_csv(summary_path, index=False)
        logger.info(f"Run summary table saved to {summary_path}")
        output_path = Path(out_dir) / f"{out_name}.report.html"
        output_path.write_text(html_content, encoding="utf-8")

        logger.info(f"Report saved to {output_path}")
        return str(output_path.resolve())
