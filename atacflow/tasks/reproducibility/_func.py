# atacflow/tasks/reproducibility/_func.py
from __future__ import annotations
import gzip
import math
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from atacflow.entry import replicate_pairs

# both ratios at or below this -> pass, one -> borderline, none -> fail
RATIO_LIMIT = 2.0


def count_peaks(path: str | Path) -> int:
    """Number of non-empty lines in a (possibly gzipped) peak file."""
    p = Path(path)
    opener = gzip.open if p.suffix == ".gz" else open
    with opener(p, "rt") as f:
        return sum(1 for line in f if line.strip())


def _ratio(a: int, b: int) -> float:
    hi, lo = max(a, b), min(a, b)
    if lo == 0:
        return 1.0 if hi == 0 else math.inf
    return hi / lo


def reproducibility_qc(
    *,
    peaks: Sequence[str],
    peaks_pr: Sequence[str],
    peak_ppr: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Pick the optimal/conservative peak sets and score reproducibility.

    peaks    : pairwise true-replicate comparison peaks, in row-major pair
               order (rep1-rep2, rep1-rep3, ..., rep{N-1}-repN)
    peaks_pr : per-replicate pseudo-replicate comparison peaks (rep1..repN)
    peak_ppr : pooled pseudo-replicate comparison peaks (N > 1)
    """
    num_rep = len(peaks_pr)
    if num_rep == 0:
        raise ValueError("at least one pseudo-replicate comparison is required")
    pairs = replicate_pairs(num_rep)
    if len(peaks) != len(pairs):
        raise ValueError(f"expected {len(pairs)} pairwise peak files for {num_rep} replicates, got {len(peaks)}")

    n_pr = [count_peaks(p) for p in peaks_pr]
    row: Dict[str, Any] = {}
    for i, n in enumerate(n_pr, 1):
        row[f"N{i}"] = n

    if pairs:
        n_t = [count_peaks(p) for p in peaks]
        for (i, j), n in zip(pairs, n_t):
            row[f"Nt_rep{i + 1}-rep{j + 1}"] = n
        best = max(range(len(n_t)), key=lambda k: n_t[k])
        i, j = pairs[best]
        consv_label, consv_peak, nt_max = f"rep{i + 1}-rep{j + 1}", peaks[best], n_t[best]
        row["Nt"] = nt_max
    else:
        consv_label, consv_peak, nt_max = "rep1_pr", peaks_pr[0], n_pr[0]

    opt_label, opt_peak, n_opt = consv_label, consv_peak, nt_max
    rescue_ratio = float("nan")
    if pairs and peak_ppr:
        n_p = count_peaks(peak_ppr)
        row["Np"] = n_p
        rescue_ratio = _ratio(n_p, nt_max)
        if n_p > nt_max:
            opt_label, opt_peak, n_opt = "pooled_pr", peak_ppr, n_p

    self_consistency_ratio = _ratio(max(n_pr), min(n_pr))
    checks = [self_consistency_ratio <= RATIO_LIMIT]
    if not math.isnan(rescue_ratio):
        checks.append(rescue_ratio <= RATIO_LIMIT)
    passed = sum(checks)
    if passed == len(checks):
        verdict = "pass"
    elif passed > 0:
        verdict = "borderline"
    else:
        verdict = "fail"

    row.update({
        "N_opt": n_opt,
        "N_consv": nt_max,
        "opt_set": opt_label,
        "consv_set": consv_label,
        "rescue_ratio": rescue_ratio,
        "self_consistency_ratio": self_consistency_ratio,
        "reproducibility": verdict,
    })
    return {"row": row, "optimal_peak": opt_peak, "conservative_peak": consv_peak}


def write_reproducibility_outputs(
    result: Dict[str, Any],
    *,
    optimal_out: str | Path,
    conservative_out: str | Path,
    qc_out: str | Path,
) -> List[Path]:
    shutil.copyfile(result["optimal_peak"], optimal_out)
    shutil.copyfile(result["conservative_peak"], conservative_out)
    pd.DataFrame([result["row"]]).to_csv(qc_out, sep="\t", index=False, na_rep="NA")
    return [Path(optimal_out), Path(conservative_out), Path(qc_out)]
