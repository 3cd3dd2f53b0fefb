"""
Unit tests for the reproducibility QC aggregator.
"""

import gzip
import math

import pandas as pd
import pytest

from atacflow.tasks.reproducibility.__main__ import main
from atacflow.tasks.reproducibility._func import (
    count_peaks,
    reproducibility_qc,
    write_reproducibility_outputs,
)


@pytest.fixture
def peak_file(tmp_path):
    """Write a gzipped narrowPeak-like file with `n` records."""

    def _make(name, n):
        path = tmp_path / f"{name}.narrowPeak.gz"
        with gzip.open(path, "wt") as f:
            for i in range(n):
                f.write(f"chr1\t{i * 100}\t{i * 100 + 50}\tPeak_{i}\t1000\n")
        return str(path)

    return _make


class TestCountPeaks:
    def test_gzip_and_plain(self, tmp_path, peak_file):
        assert count_peaks(peak_file("a", 7)) == 7
        plain = tmp_path / "b.narrowPeak"
        plain.write_text("chr1\t1\t2\n\nchr1\t3\t4\n")
        assert count_peaks(plain) == 2


class TestReproducibilityQc:
    """Optimal/conservative selection and the pass/borderline/fail verdict."""

    def test_two_replicates_pooled_wins(self, peak_file):
        res = reproducibility_qc(
            peaks=[peak_file("rep1-rep2", 100)],
            peaks_pr=[peak_file("pr1", 80), peak_file("pr2", 60)],
            peak_ppr=peak_file("ppr", 150),
        )
        row = res["row"]
        assert row["Nt"] == 100
        assert row["Np"] == 150
        assert row["opt_set"] == "pooled_pr"
        assert row["consv_set"] == "rep1-rep2"
        assert row["N_opt"] == 150
        assert row["rescue_ratio"] == pytest.approx(1.5)
        assert row["self_consistency_ratio"] == pytest.approx(80 / 60)
        assert row["reproducibility"] == "pass"
        assert res["optimal_peak"].endswith("ppr.narrowPeak.gz")
        assert res["conservative_peak"].endswith("rep1-rep2.narrowPeak.gz")

    def test_three_replicates_borderline(self, peak_file):
        res = reproducibility_qc(
            peaks=[peak_file("r12", 50), peak_file("r13", 120), peak_file("r23", 90)],
            peaks_pr=[peak_file("pr1", 40), peak_file("pr2", 50), peak_file("pr3", 60)],
            peak_ppr=peak_file("ppr", 30),
        )
        row = res["row"]
        assert row["consv_set"] == "rep1-rep3"
        assert row["opt_set"] == "rep1-rep3"
        assert row["Nt_rep2-rep3"] == 90
        assert row["rescue_ratio"] == pytest.approx(4.0)
        assert row["reproducibility"] == "borderline"

    def test_fail(self, peak_file):
        res = reproducibility_qc(
            peaks=[peak_file("r12", 100)],
            peaks_pr=[peak_file("pr1", 10), peak_file("pr2", 100)],
            peak_ppr=peak_file("ppr", 400),
        )
        assert res["row"]["reproducibility"] == "fail"

    def test_single_replicate(self, peak_file):
        pr = peak_file("pr1", 25)
        res = reproducibility_qc(peaks=[], peaks_pr=[pr])
        row = res["row"]
        assert res["optimal_peak"] == res["conservative_peak"] == pr
        assert row["opt_set"] == row["consv_set"] == "rep1_pr"
        assert math.isnan(row["rescue_ratio"])
        assert row["reproducibility"] == "pass"

    def test_pair_count_mismatch(self, peak_file):
        with pytest.raises(ValueError, match="expected 3 pairwise"):
            reproducibility_qc(
                peaks=[peak_file("r12", 1)],
                peaks_pr=[peak_file("a", 1), peak_file("b", 1), peak_file("c", 1)],
            )

    def test_no_pseudo_replicates(self):
        with pytest.raises(ValueError, match="at least one"):
            reproducibility_qc(peaks=[], peaks_pr=[])


class TestOutputs:
    def test_write_outputs(self, tmp_path, peak_file):
        res = reproducibility_qc(peaks=[], peaks_pr=[peak_file("pr1", 3)])
        out = tmp_path / "out"
        out.mkdir()
        write_reproducibility_outputs(
            res,
            optimal_out=out / "opt.gz",
            conservative_out=out / "consv.gz",
            qc_out=out / "qc.tsv",
        )
        assert count_peaks(out / "opt.gz") == 3
        df = pd.read_csv(out / "qc.tsv", sep="\t")
        assert df.loc[0, "reproducibility"] == "pass"
        assert pd.isna(df.loc[0, "rescue_ratio"])

    def test_cli(self, tmp_path, peak_file):
        out = tmp_path / "cli"
        main([
            "--peaks", peak_file("r12", 20),
            "--peaks-pr", peak_file("pr1", 15), peak_file("pr2", 12),
            "--peak-ppr", peak_file("ppr", 18),
            "--prefix", "reproducibility.overlap",
            "--out-dir", str(out),
        ])
        assert (out / "reproducibility.overlap.optimal_peak.narrowPeak.gz").is_file()
        assert (out / "reproducibility.overlap.conservative_peak.narrowPeak.gz").is_file()
        df = pd.read_csv(out / "reproducibility.overlap.reproducibility.qc", sep="\t")
        assert df.loc[0, "Nt"] == 20
        assert df.loc[0, "Np"] == 18
