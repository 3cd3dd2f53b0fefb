from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import math, os, shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task
from atacflow.tasks.utils import wrap_argv


@register_task("idr")
class IdrTask(Task):
    """
    Irreproducible discovery rate between two peak sets, with the pooled
    (or own true-replicate) peaks as the merged peak list.

    OUTPUTS:
      idr_peak          : peaks passing -log10(idr_thresh), narrowPeak columns only
      idr_unthresholded : full IDR output (gz)
      idr_plot          : IDR diagnostic plot
      idr_log           : IDR log
    """

    TYPE = "idr"

    INPUTS = {
        "peak1":       {"type": "path", "required": True, "desc": "Peaks of set 1"},
        "peak2":       {"type": "path", "required": True, "desc": "Peaks of set 2"},
        "peak_pooled": {"type": "path", "required": True, "desc": "Merged/oracle peak list"},
    }
    OUTPUTS = {
        "idr_peak":          {"name": "{prefix}.idr.narrowPeak.gz"},
        "idr_unthresholded": {"name": "{prefix}.idr.unthresholded-peaks.txt.gz"},
        "idr_plot":          {"name": "{prefix}.idr.unthresholded-peaks.txt.png"},
        "idr_log":           {"name": "{prefix}.idr.log"},
    }
    DEFAULTS: Dict[str, Any] = {
        "idr_thresh": 0.05,
        "idr_rank": "p.value",
        "idr_bin": "idr",
    }
    RESOURCES = {"threads": 1, "mem_gb": 4, "time_hr": 4, "queue": "short"}

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        thresh = float(params["idr_thresh"])
        if not 0.0 < thresh <= 1.0:
            raise ValueError(f"[{self.TYPE}] idr_thresh must be in (0, 1], got {thresh}")
        neg_log10 = -math.log10(thresh)

        tmp = {k: os.path.join(workdir, f"{prefix}.{k}.tmp") for k in ("peak1", "peak2", "peak_pooled")}
        unthresh = outputs["idr_unthresholded"][:-len(".gz")]
        lines: List[Sequence[str] | str] = [
            f"zcat -f {shlex.quote(inputs[k])} > {shlex.quote(tmp[k])}" for k in tmp
        ]
        lines.append(wrap_argv([
            params["idr_bin"],
            "--samples", tmp["peak1"], tmp["peak2"],
            "--peak-list", tmp["peak_pooled"],
            "--input-file-type", "narrowPeak",
            "--output-file", unthresh,
            "--rank", str(params["idr_rank"]),
            "--soft-idr-threshold", str(thresh),
            "--plot", "--use-best-multisummit-IDR",
            "--log-output-file", outputs["idr_log"],
        ], params))
        keep_awk = f'BEGIN{{OFS="\\t"}} $12>={neg_log10:.6f} {{print $1,$2,$3,$4,$5,$6,$7,$8,$9,$10}}'
        lines.append(
            f"awk {shlex.quote(keep_awk)} {shlex.quote(unthresh)} | sort | uniq | sort -grk7,7"
            f" | gzip -nc > {shlex.quote(outputs['idr_peak'])}"
        )
        lines.append(["gzip", "-nf", unthresh])
        lines.append(["rm", "-f", *tmp.values()])
        return lines
