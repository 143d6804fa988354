import re
import numpy as np
import pandas as pd
from scipy import stats
import matplotlib as mpl
mpl.use('Agg')
import matplotlib.pyplot as plt
from matplotlib import axes
from matplotlib.patches import FancyBboxPatch

from fullsib.log import logger
from typing import List, Optional


def _natural_sort_key(value: str):
    parts = re.split(r'(\d+)', str(value))
    return [int(p) if p.isdigit() else p.lower() for p in parts]


class Visualizer:
    def __init__(self):
        pass

    def plot_manhattan(self, df, point_size=5,
                       chr_unit='mb', chr_gap=0, chr_colors=None,
                       sig_threshold=None, sig_line_style=None,
                       xlabel=None, ylabel=None, title=None,
                       ax=None):
        """
        Plot Manhattan plot for GWAS results.

        :param df: DataFrame containing association results (columns: chrom, pos, pvalue)
        :param point_size: Point size for Manhattan plot
        :param chr_unit: Position unit, one of ['mb', 'kb', 'bp']
        :param chr_gap: Gap between chromosomes in the unit specified
        :param chr_colors: List of colors for chromosomes, cycled if shorter than the number of chromosomes
        :param sig_threshold: Significance threshold p-value, a float or a list of floats
        :param sig_line_style: Style of the significance line
        :param xlabel: X-axis label
        :param ylabel: Y-axis label
        :param title: Title of the plot
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting Manhattan plot...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        missing = [c for c in ("chrom", "pos", "pvalue") if c not in df.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        unit_factors = {'mb': 1e-6, 'kb': 1e-3, 'bp': 1}
        factor = unit_factors.get(chr_unit.lower(), 1e-6)

        df = df.dropna(subset=["pvalue"]).copy()
        df["chrom"] = df["chrom"].astype(str)
        df["plot_value"] = -np.log10(np.clip(df["pvalue"].astype(float), 1e-300, None))
        df["pos"] = df["pos"] * factor
        order = sorted(df["chrom"].unique(), key=_natural_sort_key)

        if chr_colors is None:
            chr_colors = ["#B8B0C3", "#38638D"]

        # Calculate cumulative positions for each chromosome
        chrom_start = {}
        chrom_center = {}
        current_pos = 0
        for chrom in order:
            group = df[df["chrom"] == chrom]
            chrom_start[chrom] = current_pos
            chrom_center[chrom] = current_pos + group["pos"].max() / 2
            current_pos += group["pos"].max() + chr_gap

        for i, chrom in enumerate(order):
            group = df[df["chrom"] == chrom]
            ax.scatter(group["pos"] + chrom_start[chrom], group["plot_value"],
                       color=chr_colors[i % len(chr_colors)], s=point_size)

        sig_params = {'color': 'gray', 'linestyle': '--', 'linewidth': 1}
        if sig_line_style:
            sig_params.update(sig_line_style)

        if sig_threshold is not None:
            thresholds = sig_threshold if isinstance(sig_threshold, list) else [sig_threshold]
            for threshold in thresholds:
                ax.axhline(-np.log10(threshold), **sig_params, label=f"Threshold {threshold:.2e}")
            ax.legend(loc="upper right", frameon=False)
        else:
            logger.info("No significance threshold provided; skipping threshold line.")

        ax.set_xticks(list(chrom_center.values()), list(chrom_center.keys()))
        ax.tick_params(axis='x', which='major', rotation=90)
        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel(xlabel if xlabel is not None else f"Chromosome Position ({chr_unit.upper()})")
        ax.set_ylabel(ylabel if ylabel is not None else r"$-\log_{10}(p)$")
        ax.set_xlim(0, current_pos)
        ax.set_ylim(0, ax.get_ylim()[1])
        ax.set_title(title if title is not None else "Manhattan Plot")

    def plot_qq(self, df, point_size=5, xlabel=None, ylabel=None, title=None, ax=None):
        """
        Plot QQ plot for GWAS summary statistics.

        :param df: DataFrame containing summary statistics (columns: pvalue).
        :param point_size: Point size for QQ plot
        :param xlabel: X-axis label
        :param ylabel: Y-axis label
        :param title: Title of the plot
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting QQ plot...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        pvalues = df["pvalue"].dropna().to_numpy(dtype=float)
        observed = -np.log10(np.clip(np.sort(pvalues), 1e-300, None))
        expected = -np.log10(np.linspace(1 / len(pvalues), 1, len(pvalues)))

        ax.scatter(expected, observed, s=point_size, color="#38638D")
        ax.plot([0, max(expected)], [0, max(expected)], color="gray", linestyle="--", linewidth=1)

        # genomic inflation factor
        chi2 = stats.chi2.isf(np.clip(pvalues, 1e-300, 1.0), 1)
        lam = np.median(chi2) / stats.chi2.ppf(0.5, 1)
        ax.text(0.05, 0.95, rf"$\lambda$ = {lam:.3f}", transform=ax.transAxes, ha="left", va="top")

        ax.set_xlabel(xlabel if xlabel is not None else r"Expected $-\log_{10}(p)$")
        ax.set_ylabel(ylabel if ylabel is not None else r"Observed $-\log_{10}(p)$")
        ax.set_title(title if title is not None else "QQ Plot")
        ax.spines[['top', 'right']].set_visible(False)

    def plot_snp_density(self, snp_map: pd.DataFrame, window: int = 1_000_000, cmap='YlOrRd', ax=None):
        """
        Plot marker density along each chromosome.

        :param snp_map: DataFrame with columns chrom, pos
        :param window: Window size (bp)
        :param cmap: Colormap for marker counts
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting SNP density...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        snp_map = snp_map.copy()
        snp_map["chrom"] = snp_map["chrom"].astype(str)
        order = sorted(snp_map["chrom"].unique(), key=_natural_sort_key)
        max_bins = int(snp_map["pos"].max() // window) + 1
        counts = np.full((len(order), max_bins), np.nan)
        for i, chrom in enumerate(order):
            bins = (snp_map.loc[snp_map["chrom"] == chrom, "pos"].to_numpy() // window).astype(int)
            n_bins = bins.max() + 1
            counts[i, :n_bins] = np.bincount(bins, minlength=n_bins)

        cmap = mpl.colormaps.get_cmap(cmap)
        mesh = ax.pcolormesh(np.arange(max_bins + 1) * window / 1e6, np.arange(len(order) + 1), counts,
                             cmap=cmap, shading='flat')
        ax.set_yticks(np.arange(len(order)) + 0.5, order)
        ax.invert_yaxis()
        ax.set_xlabel("Position (Mb)")
        ax.set_ylabel("Chromosome")
        ax.set_title(f"SNP density ({window / 1e6:g} Mb windows)")
        ax.figure.colorbar(mesh, ax=ax, label="Number of SNPs")
        ax.spines[['top', 'right']].set_visible(False)

    def plot_lod_profile(self, profile: pd.DataFrame, threshold: Optional[float] = None,
                         peaks: Optional[pd.DataFrame] = None, chr_gap: float = 10.0,
                         color='#38638D', title=None, ax: axes.Axes = None):
        """
        Plot the genome-wide LOD profile of a CIM scan.

        :param profile: DataFrame with columns chrom, cM, lod
        :param threshold: Genome-wide LOD threshold
        :param peaks: Optional QTL table (columns chrom, cM, lod) to mark
        :param chr_gap: Gap between chromosomes (cM)
        """
        logger.info("Plotting LOD profile...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        offset = 0.0
        centers = {}
        starts = {}
        for chrom, group in profile.groupby("chrom", sort=False):
            starts[chrom] = offset
            ax.plot(group["cM"] + offset, group["lod"], color=color, linewidth=1)
            centers[chrom] = offset + group["cM"].max() / 2
            offset += group["cM"].max() + chr_gap
            ax.axvline(offset - chr_gap / 2, color='lightgray', linewidth=0.5)

        if threshold is not None:
            ax.axhline(threshold, color='gray', linestyle='--', linewidth=1, label=f"LOD {threshold:.2f}")
            ax.legend(loc="upper right", frameon=False)
        if peaks is not None and not peaks.empty:
            for _, peak in peaks.iterrows():
                if peak["chrom"] in starts:
                    ax.plot(peak["cM"] + starts[peak["chrom"]], peak["lod"], marker='v', color='#C0392B')

        ax.set_xticks(list(centers.values()), list(centers.keys()))
        ax.tick_params(axis='x', which='major', rotation=90)
        ax.set_xlim(0, max(offset - chr_gap, 1))
        ax.set_ylim(0, ax.get_ylim()[1])
        ax.set_xlabel("Chromosome (cM)")
        ax.set_ylabel("LOD")
        ax.set_title(title if title is not None else "CIM profile")
        ax.spines[['top', 'right']].set_visible(False)

    def plot_linkage_map(self, table: pd.DataFrame, width: float = 0.4, ax: axes.Axes = None):
        """
        Plot linkage groups as vertical bars with a tick per marker.

        :param table: Linkage map table (columns chrom, cM)
        :param width: Bar width
        """
        logger.info("Plotting linkage map...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        chroms = list(dict.fromkeys(table["chrom"].astype(str)))
        for i, chrom in enumerate(chroms):
            cm = table.loc[table["chrom"].astype(str) == chrom, "cM"].to_numpy()
            ax.add_patch(FancyBboxPatch(
                (i - width / 2, 0), width, max(cm.max(), 1e-6),
                boxstyle=f"round,pad=0,rounding_size={width / 3}",
                facecolor="#ECECEC", edgecolor="#303030", linewidth=0.8))
            ax.hlines(cm, i - width / 2, i + width / 2, color="#38638D", linewidth=0.5)
        ax.set_xlim(-0.5, len(chroms) - 0.5)
        ax.set_ylim(table["cM"].max() * 1.02 if len(table) else 1, 0)
        ax.set_xticks(range(len(chroms)), chroms)
        ax.set_xlabel("Chromosome")
        ax.set_ylabel("Position (cM)")
        ax.spines[['top', 'right', 'bottom']].set_visible(False)

    def plot_dist(self, df, kind='box', columns=None, colors=None,
                  alpha=0.7, bins=30, xlabel=None, ylabel=None, ax=None):
        """
        Plot distribution of data in DataFrame columns.

        :param df: DataFrame containing data to plot
        :param kind: Type of plot ('box', 'hist')
        :param columns: List of column names to plot. If None, use all numeric columns
        :param colors: List of colors for each column. If None, use default matplotlib colors
        :param alpha: Transparency level for plots (0-1)
        :param bins: Number of bins for histogram (default: 30)
        :param ax: Matplotlib Axes object for plotting.
        """
        logger.info(f"Plotting distribution using {kind} plot...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")

        if columns is None:
            columns = df.select_dtypes(include=[np.number]).columns.tolist()
        else:
            missing_cols = [col for col in columns if col not in df.columns]
            if missing_cols:
                raise ValueError(f"Columns not found in DataFrame: {missing_cols}")
        if not columns:
            raise ValueError("No numeric columns found in DataFrame")

        if colors is None:
            colors = [f"C{i}" for i in range(len(columns))]
        elif len(colors) < len(columns):
            colors = (colors * ((len(columns) // len(colors)) + 1))[:len(columns)]

        plot_data = [pd.to_numeric(df[col], errors="coerce").dropna().values for col in columns]
        if kind == 'box':
            meanprops = dict(marker='D', markeredgecolor='black', markerfacecolor='white', markersize=5)
            box_plot = ax.boxplot(plot_data, tick_labels=columns, patch_artist=True,
                                  showmeans=True, meanprops=meanprops)
            for patch, color in zip(box_plot['boxes'], colors):
                patch.set_facecolor(color)
                patch.set_alpha(alpha)
            if len(columns) > 5:
                ax.tick_params(axis='x', rotation=45)
        elif kind == 'hist':
            for values, col, color in zip(plot_data, columns, colors):
                ax.hist(values, bins=bins, color=color, alpha=alpha, label=col)
            if len(columns) > 1:
                ax.legend(frameon=False)
        else:
            raise ValueError(f"Invalid kind: {kind}. Choose from 'box', 'hist'")

        ax.set_xlabel(xlabel)
        ax.set_ylabel(ylabel)
        ax.set_title(f'{kind.capitalize()} Plot')
        ax.spines[['top', 'right']].set_visible(False)

    def save_figure(self, fig, path: str, dpi: int = 300):
        fig.tight_layout()
        fig.savefig(path, dpi=dpi, bbox_inches="tight")
        plt.close(fig)
        logger.info(f"Figure saved to {path}")

    def gwas_plots(self, table: pd.DataFrame, threshold: Optional[float], prefix: str, fmt: str = "png") -> List[str]:
        """Manhattan and QQ figures for one trait/model result table."""
        paths = []
        fig, ax = plt.subplots(figsize=(12, 4))
        self.plot_manhattan(table, sig_threshold=threshold, title=None, ax=ax)
        paths.append(f"{prefix}.manhattan.{fmt}")
        self.save_figure(fig, paths[-1])
        fig, ax = plt.subplots(figsize=(5, 5))
        self.plot_qq(table, ax=ax)
        paths.append(f"{prefix}.qq.{fmt}")
        self.save_figure(fig, paths[-1])
        return paths
