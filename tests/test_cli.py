import numpy as np
import pandas as pd
import pytest

from fullsib.fullsib import build_parser, main


def _gwas_table(path):
    rng = np.random.default_rng(0)
    n = 200
    pd.DataFrame({
        "marker": [f"m{i}" for i in range(n)],
        "chrom": np.repeat(["1", "2"], n // 2),
        "pos": np.tile(np.arange(n // 2) * 100_000 + 1, 2),
        "effect": rng.normal(size=n),
        "se": np.full(n, 0.1),
        "pvalue": rng.uniform(size=n),
        "significant": False,
    }).to_csv(path, index=False)
    return path


def test_parser_defaults():
    args = build_parser().parse_args(["map", "--geno", "fam.tsv"])
    assert args.map_function == "haldane"
    assert args.missing == 0.25
    assert args.func.__name__ == "run_map"
    args = build_parser().parse_args(["gwas", "--vcf", "x.vcf", "--blues", "b.csv", "--models", "GLM"])
    assert args.models == ["GLM"]
    with pytest.raises(SystemExit):
        build_parser().parse_args(["gwas", "--vcf", "x.vcf", "--blues", "b.csv", "--models", "BLINK"])


def test_main_without_command_prints_help(capsys):
    main([])
    assert "usage" in capsys.readouterr().out.lower()


def test_plot_commands(tmp_path):
    summary = _gwas_table(tmp_path / "t.gwas.csv")
    main(["plot", "manhattan", "--summary", str(summary), "--qq", "--sig_threshold", "1e-3",
          "--out_dir", str(tmp_path / "plots"), "--out_name", "man"])
    main(["plot", "qq", "--summary", str(summary), "--out_dir", str(tmp_path / "plots"), "--out_name", "qq"])
    assert (tmp_path / "plots" / "man.png").exists()
    assert (tmp_path / "plots" / "qq.png").exists()


def test_family_map_and_qtl_commands(tmp_path, vcf_path, qtl_values):
    out = str(tmp_path / "res")
    main(["family", "--vcf", vcf_path, "--family", "159", "--parents", "759", "VEN25",
          "--out_dir", out, "--out_name", "fam"])
    geno = tmp_path / "res" / "fam.family.tsv"
    assert geno.exists()

    main(["map", "--geno", str(geno), "--out_dir", out, "--out_name", "fam"])
    assert (tmp_path / "res" / "fam.map.csv").exists()
    assert (tmp_path / "res" / "fam.twopoint.csv").exists()

    rng = np.random.default_rng(2)
    blues = pd.DataFrame({
        "genotype": qtl_values.index,
        "trait": "DM",
        "blue": 30 + 2 * qtl_values.to_numpy() + rng.normal(0, 0.5, len(qtl_values)),
    })
    blues_path = tmp_path / "res" / "fam.blues.csv"
    blues.to_csv(blues_path, index=False)
    main(["qtl", "--geno", str(geno), "--blues", str(blues_path), "--n_perm", "20",
          "--out_dir", out, "--out_name", "fam"])
    peaks = pd.read_csv(tmp_path / "res" / "fam.qtl.csv", dtype={"chrom": str})
    assert "1" in set(peaks["chrom"])
    assert (tmp_path / "res" / "fam.DM.lod.png").exists()
