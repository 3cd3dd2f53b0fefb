# atacflow/tasks/reproducibility/__main__.py
from __future__ import annotations
import argparse
from pathlib import Path

from ._func import reproducibility_qc, write_reproducibility_outputs


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="python -m atacflow.tasks.reproducibility",
        description="Reproducibility QC over overlap/IDR comparison peaks",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--peaks", nargs="*", default=[],
                   help="Pairwise true-replicate comparison peaks (rep1-rep2, rep1-rep3, ...)")
    p.add_argument("--peaks-pr", dest="peaks_pr", nargs="+", required=True,
                   help="Per-replicate pseudo-replicate comparison peaks (rep1, rep2, ...)")
    p.add_argument("--peak-ppr", dest="peak_ppr", default=None,
                   help="Pooled pseudo-replicate comparison peaks")
    p.add_argument("--prefix", required=True, help="Output file prefix")
    p.add_argument("--out-dir", dest="out_dir", default=".", help="Output directory")
    return p


def main(argv=None):
    a = build_parser().parse_args(argv)
    out_dir = Path(a.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    result = reproducibility_qc(peaks=a.peaks, peaks_pr=a.peaks_pr, peak_ppr=a.peak_ppr)
    written = write_reproducibility_outputs(
        result,
        optimal_out=out_dir / f"{a.prefix}.optimal_peak.narrowPeak.gz",
        conservative_out=out_dir / f"{a.prefix}.conservative_peak.narrowPeak.gz",
        qc_out=out_dir / f"{a.prefix}.reproducibility.qc",
    )
    row = result["row"]
    print(f"[reproducibility] {a.prefix}: {row['reproducibility']} "
          f"(opt={row['opt_set']}, consv={row['consv_set']})")
    for p in written:
        print(f"[reproducibility] wrote {p}")


if __name__ == "__main__":
    main()
