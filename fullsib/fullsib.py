from fullsib import geno as geno_mod
from fullsib import gwas as gwas_mod
from fullsib import linkage as linkage_mod
from fullsib.config import DEFAULTS, load_config, merge_config
from fullsib.log import logger
from fullsib.phe import phe_stat, read_phenotypes, clean_phenotypes, estimate_blues, write_blues, read_blues
from fullsib.pipeline import Pipeline
from fullsib.qtl import QTL, genoprob
from fullsib.report import Report
from fullsib.viz import Visualizer

import argparse
import os
from typing import List, Optional

import pandas as pd
import matplotlib.pyplot as plt


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def run_blues(args):
    """Clean trial phenotypes and estimate BLUEs/BLUPs and heritability."""

    logger.info("Starting BLUE estimation...")
    traits = _split_list(args.traits)
    if not traits:
        raise ValueError("--traits is required (comma-separated trait columns).")
    columns = {
        "trial_col": args.trial_col,
        "row_col": args.row_col,
        "col_col": args.col_col,
        "genotype_col": args.genotype_col,
    }
    raw = read_phenotypes(args.input, sep=args.sep)
    clean = clean_phenotypes(raw, traits, rep_col=args.rep_col, progeny_prefix=args.progeny_prefix, **columns)
    blues, h2, _ = estimate_blues(clean, traits, **columns)
    write_blues(blues, h2, args.out_dir, args.out_name)
    for _, row in h2.iterrows():
        logger.info(f"  {row['trait']}: H2 = {row['h2']:.3f}")
    logger.info("BLUE estimation completed!")


def run_family(args):
    """Extract one fullsib family (two parents + progeny) from a multi-family VCF."""

    logger.info("Starting family extraction...")
    if len(args.parents) != 2:
        raise ValueError("--parents takes exactly two clone names.")
    spec = geno_mod.FamilySpec(args.family, args.parents[0], args.parents[1])
    pedigree = geno_mod.read_pedigree(args.pedigree) if args.pedigree else None
    geno = geno_mod.read_vcf(args.vcf)
    family = geno_mod.extract_family(geno, spec, pedigree)
    out_path = os.path.join(args.out_dir, f"{args.out_name}.family.tsv")
    geno_mod.write_genotypes(family, out_path)
    logger.info("Family extraction completed!")


def run_map(args):
    """Build the linkage map of a fullsib family."""

    logger.info("Starting linkage map construction...")
    family = geno_mod.read_genotype_table(args.geno)
    seg = linkage_mod.classify_markers(family)
    linkage_mod.write_raw(seg, os.path.join(args.out_dir, f"{args.out_name}.raw"))
    seg = linkage_mod.filter_missing(seg, args.missing)
    seg_test = linkage_mod.test_segregation(seg, args.seg_alpha)
    seg_test.to_csv(os.path.join(args.out_dir, f"{args.out_name}.segregation.csv"), index=False, float_format="%.6g")

    tp = linkage_mod.two_point(seg)
    tp.pairs(min_lod=args.lod).to_csv(os.path.join(args.out_dir, f"{args.out_name}.twopoint.csv"), index=False, float_format="%.6g")
    check = linkage_mod.linkage_check(seg, tp, args.lod, args.max_rf)
    check.to_csv(os.path.join(args.out_dir, f"{args.out_name}.linkage_check.csv"), index=False)

    linkage_map = linkage_mod.estimate_map(
        seg, tol=args.tol, error=args.error, map_function=args.map_function, max_iter=args.max_iter
    )
    linkage_map.save(args.out_dir, args.out_name)

    visualizer = Visualizer()
    fig = plt.figure(figsize=(args.width, args.height))
    ax = fig.add_subplot(111)
    visualizer.plot_linkage_map(linkage_map.table, ax=ax)
    visualizer.save_figure(fig, os.path.join(args.out_dir, f"{args.out_name}.map.{args.format}"))
    logger.info("Linkage map construction completed!")


def run_qtl(args):
    """Composite interval mapping on a saved linkage map."""

    logger.info("Starting QTL analysis...")
    map_dir = args.map_dir or args.out_dir
    map_name = args.map_name or args.out_name
    linkage_map = linkage_mod.LinkageMap.load(map_dir, map_name)
    seg = linkage_mod.classify_markers(geno_mod.read_genotype_table(args.geno))
    seg = seg.subset(linkage_map.table["marker"])
    phenotypes = read_blues(args.blues, value_col=args.value_col)

    probs = genoprob(linkage_map, seg, step=args.step)
    scanner = QTL(
        step=args.step, window=args.window, max_cofactors=args.max_cofactors,
        n_perm=args.n_perm, alpha=args.alpha, seed=args.seed, lod_drop=args.lod_drop,
    )
    results = scanner.scan(probs, phenotypes, _split_list(args.traits) or None)
    scanner.save(results, args.out_dir, args.out_name)

    visualizer = Visualizer()
    for trait, res in results.items():
        fig = plt.figure(figsize=(args.width, args.height))
        ax = fig.add_subplot(111)
        visualizer.plot_lod_profile(res.profile, res.threshold, res.peaks, title=f"{trait} CIM", ax=ax)
        visualizer.save_figure(fig, os.path.join(args.out_dir, f"{args.out_name}.{trait}.lod.{args.format}"))
    logger.info("QTL analysis completed!")


def run_gwas(args):
    """Prepare GWAS inputs from a VCF and BLUEs and run GLM/MLM/FarmCPU."""

    logger.info("Initializing GWAS analysis...")
    geno = geno_mod.read_vcf(args.vcf)
    phenotypes = read_blues(args.blues, value_col=args.value_col)
    data = gwas_mod.prepare(
        geno, phenotypes, max_missing=args.max_missing, min_maf=args.maf,
        impute=not args.no_impute, fill_value=args.fill_value,
    )
    gwas_mod.write_gwas_inputs(data, os.path.join(args.out_dir, args.out_name))

    n_pcs = dict(DEFAULTS["gwas"]["n_pcs"])
    if args.n_pcs is not None:
        n_pcs = {model: args.n_pcs for model in n_pcs}
    driver = gwas_mod.GWAS(
        models=args.models, n_pcs=n_pcs, n_perm=args.n_perm, alpha=args.alpha,
        seed=args.seed, max_loop=args.max_loop, method_bin=args.method_bin,
    )
    results = driver.run(data, _split_list(args.traits) or None)
    summary = driver.save(results, args.out_dir, args.out_name)

    visualizer = Visualizer()
    for trait, by_model in results.items():
        for model, table in by_model.items():
            prefix = os.path.join(args.out_dir, f"{args.out_name}.{trait}.{model}")
            visualizer.gwas_plots(table, table.attrs.get("threshold"), prefix, args.format)

    if summary.empty:
        logger.warning("No GWAS results were produced.")
    else:
        logger.info("GWAS signal summary:")
        for _, row in summary.iterrows():
            logger.info(f"  {row['trait']} {row['model']}: {row['n_significant']} significant (p <= {row['threshold']:.3g})")
    logger.info("GWAS analysis completed!")


def run_pipeline(args):
    """Run the staged analysis from a JSON config."""

    config = load_config(args.config)
    overrides = {}
    if args.out_dir is not None:
        overrides["out_dir"] = args.out_dir
    if args.out_name is not None:
        overrides["out_name"] = args.out_name
    if args.cache_dir is not None:
        overrides["cache_dir"] = args.cache_dir
    if args.recompute:
        overrides["recompute"] = True
    if overrides:
        config = merge_config(config, {"output": overrides})
    pipeline = Pipeline(config)
    pipeline.run(args.stages or None)
    logger.info("Pipeline completed!")


def run_report(args):
    """Render the HTML report from the outputs of a previous run."""

    logger.info("Generating HTML report...")
    path = Report().render(args.out_dir, args.out_name)
    logger.info(f"Report available at {path}")


def _read_gwas_table(path: str) -> pd.DataFrame:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"GWAS result file not found: {path}")
    df = pd.read_csv(path, dtype={"chrom": str})
    missing = [c for c in ("chrom", "pos", "pvalue") if c not in df.columns]
    if missing:
        raise ValueError(f"GWAS result file is missing column(s): {missing}")
    return df


def plot_manhattan(args):
    """Manhattan plot"""

    logger.info("Starting plot subcommand...")
    visualizer = Visualizer()
    gwas_df = _read_gwas_table(args.summary)
    fig = plt.figure(figsize=(args.width, args.height))
    if args.qq:
        spec = fig.add_gridspec(1, 5)
        ax1 = fig.add_subplot(spec[0, :4])
        ax2 = fig.add_subplot(spec[0, 4])
        visualizer.plot_manhattan(gwas_df, chr_unit=args.chr_unit, chr_colors=args.chr_colors, sig_threshold=args.sig_threshold, point_size=args.point_size, ax=ax1)
        visualizer.plot_qq(gwas_df, point_size=args.point_size, ax=ax2)
    else:
        ax = fig.add_subplot(111)
        visualizer.plot_manhattan(gwas_df, chr_unit=args.chr_unit, chr_colors=args.chr_colors, sig_threshold=args.sig_threshold, point_size=args.point_size, ax=ax)
    visualizer.save_figure(fig, os.path.join(args.out_dir, f"{args.out_name}.{args.format}"))
    logger.info("Plotting completed!")


def plot_qq(args):
    """QQ plot"""

    logger.info("Starting plot subcommand...")
    visualizer = Visualizer()
    gwas_df = _read_gwas_table(args.summary)
    fig = plt.figure(figsize=(args.width, args.height))
    ax = fig.add_subplot(111)
    visualizer.plot_qq(gwas_df, point_size=args.point_size, ax=ax)
    visualizer.save_figure(fig, os.path.join(args.out_dir, f"{args.out_name}.{args.format}"))
    logger.info("Plotting completed!")


def build_parser() -> argparse.ArgumentParser:
    description = """
    fullsib: Genetic analysis of a cassava fullsib family, from field trials and a VCF to QTL and GWAS signals.
    """

    epilog = """
    Example usage:
    fullsib run --config fullsib.json --out_dir results
    fullsib map --geno results/fam159.family.tsv --out_name fam159 --out_dir results
    """
    __version__ = "0.1.0"

    parser = argparse.ArgumentParser(
        prog="fullsib",
        description=description,
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter  # Preserve formatting
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # phe subcommand group
    phe_parser = subparsers.add_parser("phe", help="Phenotype utilities: stat")
    phe_subparsers = phe_parser.add_subparsers(dest="phe_command", help="phe subcommands")

    phe_stat_p = phe_subparsers.add_parser("stat", help="Compute phenotype statistics and plot distribution")
    phe_stat_p.add_argument("--input", type=str, required=True, help="Input phenotype file (TXT/TSV/CSV)")
    phe_stat_p.add_argument("--sep", type=str, default="auto", help="Input separator: auto/csv/tsv/tab/','/'\t'")
    phe_stat_p.add_argument("--traits", type=str, required=True, help="Comma-separated trait columns")
    phe_stat_p.add_argument("--by", type=str, default=None, help="Optional grouping column, e.g. trial")
    phe_stat_p.add_argument("--bins", type=int, default=30, help="Histogram bins")
    phe_stat_p.add_argument("--width", type=float, default=8, help="Figure width")
    phe_stat_p.add_argument("--height", type=float, default=6, help="Figure height")
    phe_stat_p.add_argument("--format", type=str, default="png", help="Figure format: png/pdf/svg")
    phe_stat_p.add_argument("--out-dir", type=str, default=".", help="Output directory")
    phe_stat_p.add_argument("--out-name", type=str, default="phe_stat", help="Output name prefix")
    phe_stat_p.set_defaults(func=phe_stat)

    # blues subcommand
    blues_parser = subparsers.add_parser("blues", help="Fit the spatial mixed model and estimate BLUEs and heritability")
    blues_parser.add_argument("--input", type=str, required=True, help="Trial phenotype table, one row per plot")
    blues_parser.add_argument("--sep", type=str, default="auto", help="Input separator (default: %(default)s)")
    blues_parser.add_argument("--traits", type=str, required=True, help="Comma-separated trait columns")
    blues_parser.add_argument("--trial_col", type=str, default="trial", help="Trial column (default: %(default)s)")
    blues_parser.add_argument("--rep_col", type=str, default="rep", help="Replicate column (default: %(default)s)")
    blues_parser.add_argument("--row_col", type=str, default="row", help="Row column (default: %(default)s)")
    blues_parser.add_argument("--col_col", type=str, default="col", help="Column column (default: %(default)s)")
    blues_parser.add_argument("--genotype_col", type=str, default="genotype", help="Genotype column (default: %(default)s)")
    blues_parser.add_argument("--progeny_prefix", type=str, default="C4", help="Genotype label prefix of progeny; other labels are checks (default: %(default)s)")
    blues_parser.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    blues_parser.add_argument("--out_name", type=str, default="fullsib", help="Output file name prefix (default: %(default)s)")
    blues_parser.set_defaults(func=run_blues)

    # family subcommand
    family_parser = subparsers.add_parser("family", help="Extract one fullsib family from a multi-family VCF")
    family_parser.add_argument("--vcf", type=str, required=True, help="Path to VCF genotype file")
    family_parser.add_argument("--family", type=str, required=True, help="Family number, e.g. 159")
    family_parser.add_argument("--parents", type=str, nargs=2, required=True, metavar=("PARENT1", "PARENT2"), help="Clone names of the two parents")
    family_parser.add_argument("--pedigree", type=str, help="Optional pedigree CSV (sample, family, role) replacing sample-name parsing")
    family_parser.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    family_parser.add_argument("--out_name", type=str, default="fullsib", help="Output file name prefix (default: %(default)s)")
    family_parser.set_defaults(func=run_family)

    # map subcommand
    map_parser = subparsers.add_parser("map", help="Classify markers and build the linkage map")
    map_parser.add_argument("--geno", type=str, required=True, help="Family genotype table written by 'fullsib family'")
    map_parser.add_argument("--missing", type=float, default=0.25, help="Maximum missing fraction per marker (default: %(default)s)")
    map_parser.add_argument("--seg_alpha", type=float, default=0.05, help="Family-wise alpha of the segregation test (default: %(default)s)")
    map_parser.add_argument("--lod", type=float, default=3.0, help="LOD threshold for the two-point linkage check (default: %(default)s)")
    map_parser.add_argument("--max_rf", type=float, default=0.5, help="Maximum recombination fraction for the linkage check (default: %(default)s)")
    map_parser.add_argument("--tol", type=float, default=1e-4, help="EM convergence tolerance on the log-likelihood (default: %(default)s)")
    map_parser.add_argument("--error", type=float, default=0.05, help="Genotyping error rate (default: %(default)s)")
    map_parser.add_argument("--map_function", type=str, default="haldane", choices=list(linkage_mod.MAP_FUNCTIONS), help="Map function (default: %(default)s)")
    map_parser.add_argument("--max_iter", type=int, default=1000, help="Maximum EM iterations per chromosome (default: %(default)s)")
    map_parser.add_argument("--width", type=float, default=10, help="Figure width (default: %(default)s)")
    map_parser.add_argument("--height", type=float, default=6, help="Figure height (default: %(default)s)")
    map_parser.add_argument("--format", type=str, default="png", help="Output format, e.g., pdf or png (default: %(default)s)")
    map_parser.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    map_parser.add_argument("--out_name", type=str, default="fullsib", help="Output file name prefix (default: %(default)s)")
    map_parser.set_defaults(func=run_map)

    # qtl subcommand
    qtl_parser = subparsers.add_parser("qtl", help="Composite interval mapping on a linkage map")
    qtl_parser.add_argument("--geno", type=str, required=True, help="Family genotype table written by 'fullsib family'")
    qtl_parser.add_argument("--blues", type=str, required=True, help="BLUE table written by 'fullsib blues'")
    qtl_parser.add_argument("--map_dir", type=str, help="Directory of the saved map (default: --out_dir)")
    qtl_parser.add_argument("--map_name", type=str, help="Prefix of the saved map (default: --out_name)")
    qtl_parser.add_argument("--traits", type=str, help="Comma-separated traits (default: all)")
    qtl_parser.add_argument("--value_col", type=str, default="blue", help="BLUE table column to map (default: %(default)s)")
    qtl_parser.add_argument("--step", type=float, default=1.0, help="Pseudo-marker step in cM (default: %(default)s)")
    qtl_parser.add_argument("--window", type=float, default=10.0, help="Cofactor exclusion window in cM (default: %(default)s)")
    qtl_parser.add_argument("--max_cofactors", type=int, help="Upper limit on selected cofactors")
    qtl_parser.add_argument("--n_perm", type=int, default=1000, help="Permutations for the LOD threshold (default: %(default)s)")
    qtl_parser.add_argument("--alpha", type=float, default=0.05, help="Genome-wide significance level (default: %(default)s)")
    qtl_parser.add_argument("--seed", type=int, default=42, help="Random seed for permutations (default: %(default)s)")
    qtl_parser.add_argument("--lod_drop", type=float, default=1.5, help="LOD drop for support intervals (default: %(default)s)")
    qtl_parser.add_argument("--width", type=float, default=12, help="Figure width (default: %(default)s)")
    qtl_parser.add_argument("--height", type=float, default=4, help="Figure height (default: %(default)s)")
    qtl_parser.add_argument("--format", type=str, default="png", help="Output format, e.g., pdf or png (default: %(default)s)")
    qtl_parser.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    qtl_parser.add_argument("--out_name", type=str, default="fullsib", help="Output file name prefix (default: %(default)s)")
    qtl_parser.set_defaults(func=run_qtl)

    # gwas subcommand
    gwas_parser = subparsers.add_parser("gwas", help="Run GLM, MLM and FarmCPU association scans")
    gwas_parser.add_argument("--vcf", type=str, required=True, help="Path to VCF genotype file")
    gwas_parser.add_argument("--blues", type=str, required=True, help="BLUE table written by 'fullsib blues'")
    gwas_parser.add_argument("--traits", type=str, help="Comma-separated traits (default: all)")
    gwas_parser.add_argument("--value_col", type=str, default="blue", help="BLUE table column to test (default: %(default)s)")
    gwas_parser.add_argument("--models", type=str, nargs="+", default=list(gwas_mod.MODELS), choices=list(gwas_mod.MODELS), help="Association models (default: %(default)s)")
    gwas_parser.add_argument("--max_missing", type=float, default=0.1, help="Maximum missing fraction per marker (default: %(default)s)")
    gwas_parser.add_argument("--maf", type=float, default=0.05, help="Minimum minor allele frequency (default: %(default)s)")
    gwas_parser.add_argument("--no_impute", action="store_true", help="Keep missing calls instead of filling them")
    gwas_parser.add_argument("--fill_value", type=int, default=1, help="Dosage used to fill missing calls (default: %(default)s)")
    gwas_parser.add_argument("--n_pcs", type=int, help="Principal components for every model (default: GLM 5, MLM 3, FarmCPU 3)")
    gwas_parser.add_argument("--n_perm", type=int, default=100, help="Permutations for the p-value threshold (default: %(default)s)")
    gwas_parser.add_argument("--alpha", type=float, default=0.05, help="Genome-wide significance level (default: %(default)s)")
    gwas_parser.add_argument("--seed", type=int, default=42, help="Random seed for permutations (default: %(default)s)")
    gwas_parser.add_argument("--max_loop", type=int, default=10, help="Maximum FarmCPU iterations (default: %(default)s)")
    gwas_parser.add_argument("--method_bin", type=str, default="static", choices=list(gwas_mod.FARMCPU_BIN_METHODS), help="FarmCPU bin selection (default: %(default)s)")
    gwas_parser.add_argument("--format", type=str, default="png", help="Output format, e.g., pdf or png (default: %(default)s)")
    gwas_parser.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    gwas_parser.add_argument("--out_name", type=str, default="fullsib", help="Output file name prefix (default: %(default)s)")
    gwas_parser.set_defaults(func=run_gwas)

    # run subcommand
    run_parser = subparsers.add_parser("run", help="Run the staged analysis from a JSON config")
    run_parser.add_argument("--config", type=str, required=True, help="JSON config merged over the defaults")
    run_parser.add_argument("--stages", type=str, nargs="+", help="Target stages; their prerequisites run too (default: all)")
    run_parser.add_argument("--cache_dir", type=str, help="Directory for cached maps and permutation thresholds")
    run_parser.add_argument("--recompute", action="store_true", help="Ignore cached artifacts")
    run_parser.add_argument("--out_dir", type=str, help="Output directory (overrides config)")
    run_parser.add_argument("--out_name", type=str, help="Output file name prefix (overrides config)")
    run_parser.set_defaults(func=run_pipeline)

    # report subcommand
    report_parser = subparsers.add_parser("report", help="Generate the HTML run report")
    report_parser.add_argument("--out_dir", type=str, default=".", help="Directory holding the run outputs (default: %(default)s)")
    report_parser.add_argument("--out_name", type=str, default="fullsib", help="Output file name prefix of the run (default: %(default)s)")
    report_parser.set_defaults(func=run_report)

    # plot subcommand
    plot_parser = subparsers.add_parser("plot", help="Visualize GWAS results")
    plot_subparsers = plot_parser.add_subparsers(dest="plot_type", help="Plot types")

    manhattan_parser = plot_subparsers.add_parser("manhattan", help="Generate Manhattan and QQ plots")
    manhattan_parser.add_argument("--summary", type=str, required=True, help="Path to a *.gwas.csv result file")
    manhattan_parser.add_argument("--chr_unit", type=str, default="mb", help="Unit for x-axis (default: %(default)s)")
    manhattan_parser.add_argument("--chr_colors", type=str, nargs="+", help="Colors for chromosomes")
    manhattan_parser.add_argument("--sig_threshold", type=float, help="Significance p-value threshold for line plot")
    manhattan_parser.add_argument("--point_size", type=float, default=5, help="Point size for Manhattan plot (default: %(default)s)")
    manhattan_parser.add_argument("--qq", action="store_true", help="Whether to plot QQ plot (default: %(default)s)")
    manhattan_parser.add_argument("--width", type=float, default=10, help="Figure width (default: %(default)s)")
    manhattan_parser.add_argument("--height", type=float, default=3, help="Figure height (default: %(default)s)")
    manhattan_parser.add_argument("--format", type=str, default="png", help="Output format, e.g., pdf or png (default: %(default)s)")
    manhattan_parser.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    manhattan_parser.add_argument("--out_name", type=str, default="output", help="Output file name prefix (default: %(default)s)")
    manhattan_parser.set_defaults(plot_func=plot_manhattan)

    qq_parser = plot_subparsers.add_parser("qq", help="Generate QQ plot")
    qq_parser.add_argument("--summary", type=str, required=True, help="Path to a *.gwas.csv result file")
    qq_parser.add_argument("--point_size", type=float, default=5, help="Point size for QQ plot (default: %(default)s)")
    qq_parser.add_argument("--width", type=float, default=4, help="Figure width (default: %(default)s)")
    qq_parser.add_argument("--height", type=float, default=4, help="Figure height (default: %(default)s)")
    qq_parser.add_argument("--format", type=str, default="png", help="Output format, e.g., pdf or png (default: %(default)s)")
    qq_parser.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    qq_parser.add_argument("--out_name", type=str, default="output", help="Output file name prefix (default: %(default)s)")
    qq_parser.set_defaults(plot_func=plot_qq)

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()

    # Parse arguments and execute the corresponding subcommand
    args = parser.parse_args(argv)
    if not hasattr(args, "func") and not hasattr(args, "plot_func"):
        parser.print_help()
        return
    # Create output directory if it doesn't exist
    if getattr(args, "out_dir", None):
        os.makedirs(args.out_dir, exist_ok=True)
    if hasattr(args, 'plot_func'):
        args.plot_func(args)
    else:
        args.func(args)

if __name__ == "__main__":
    main()
