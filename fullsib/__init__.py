"""fullsib package

Core modules:
- fullsib.phe: phenotype cleaning, mixed models, BLUEs and heritability
- fullsib.geno: VCF reading, sample-name parsing and family extraction
- fullsib.linkage: segregation tests, two-point analysis and linkage maps
- fullsib.qtl: composite interval mapping for fullsib families
- fullsib.gwas: GWAS data bridge and GLM/MLM/FarmCPU driver
- fullsib.viz: Visualization utilities
- fullsib.report: HTML run report
- fullsib.pipeline: stage graph for the full analysis
- fullsib.fullsib: CLI entry point (main)
"""

__all__ = [
    "phe",
    "geno",
    "linkage",
    "qtl",
    "gwas",
    "viz",
    "report",
    "pipeline",
    "fullsib",
]

__version__ = "0.1.0"
