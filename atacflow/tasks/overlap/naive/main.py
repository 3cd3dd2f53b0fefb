from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task

# narrowPeak: 10 columns, so the -b record starts at $11 and the overlap size is $21
HALF_OVERLAP_AWK = (
    'BEGIN{FS="\\t";OFS="\\t"} {s1=$3-$2; s2=$13-$12; '
    'if (($21/s1 >= 0.5) || ($21/s2 >= 0.5)) {print $0}}'
)


@register_task("overlap.naive")
class NaiveOverlapTask(Task):
    """
    Naive overlap: pooled (reference) peaks that overlap a peak in set 1
    AND a peak in set 2 by at least half of either interval.
    """

    TYPE = "overlap.naive"

    INPUTS = {
        "peak1":       {"type": "path", "required": True, "desc": "Peaks of replicate/pseudo-replicate 1"},
        "peak2":       {"type": "path", "required": True, "desc": "Peaks of replicate/pseudo-replicate 2"},
        "peak_pooled": {"type": "path", "required": True, "desc": "Reference peaks (pooled or own true replicate)"},
    }
    OUTPUTS = {
        "overlap_peak": {"name": "{prefix}.overlap.narrowPeak.gz"},
    }
    DEFAULTS: Dict[str, Any] = {
        "nonamecheck": True,
        "bedtools_bin": "bedtools",
    }
    RESOURCES = {"threads": 1, "mem_gb": 4, "time_hr": 4, "queue": "short"}

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        bedtools = shlex.quote(params["bedtools_bin"])
        nnc = " -nonamecheck" if params.get("nonamecheck") else ""
        awk = f"awk {shlex.quote(HALF_OVERLAP_AWK)}"
        pooled, p1, p2 = (shlex.quote(inputs[k]) for k in ("peak_pooled", "peak1", "peak2"))
        return [
            f"{bedtools} intersect{nnc} -wo -a <(zcat -f {pooled}) -b <(zcat -f {p1})"
            f" | {awk} | cut -f 1-10 | sort -k1,1 -k2,2n | uniq"
            f" | {bedtools} intersect{nnc} -wo -a stdin -b <(zcat -f {p2})"
            f" | {awk} | cut -f 1-10 | sort -k1,1 -k2,2n | uniq"
            f" | gzip -nc > {shlex.quote(outputs['overlap_peak'])}"
        ]
