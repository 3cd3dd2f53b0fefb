from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import sys

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task
from atacflow.tasks.utils import wrap_argv


@register_task("reproducibility.qc")
class ReproducibilityTask(Task):
    """
    Fan-in over every blacklist-filtered comparison of one method (overlap or
    IDR). Runs `python -m atacflow.tasks.reproducibility` as its own process so
    it goes through the same executor/output contract as the external tools.
    """

    TYPE = "reproducibility.qc"

    INPUTS = {
        "peaks":    {"type": "paths", "required": False, "desc": "Pairwise true-replicate comparison peaks, pair order"},
        "peaks_pr": {"type": "paths", "required": True,  "desc": "Per-replicate pseudo-replicate comparison peaks"},
        "peak_ppr": {"type": "path",  "required": False, "desc": "Pooled pseudo-replicate comparison peaks"},
    }
    OUTPUTS = {
        "optimal_peak":       {"name": "{prefix}.optimal_peak.narrowPeak.gz"},
        "conservative_peak":  {"name": "{prefix}.conservative_peak.narrowPeak.gz"},
        "reproducibility_qc": {"name": "{prefix}.reproducibility.qc"},
    }
    DEFAULTS: Dict[str, Any] = {
        "python_bin": None,
    }
    RESOURCES = {"threads": 1, "mem_gb": 2, "time_hr": 1, "queue": "short"}

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        argv = [params.get("python_bin") or sys.executable, "-m", "atacflow.tasks.reproducibility"]
        if inputs.get("peaks"):
            argv += ["--peaks", *inputs["peaks"]]
        argv += ["--peaks-pr", *inputs["peaks_pr"]]
        if inputs.get("peak_ppr"):
            argv += ["--peak-ppr", inputs["peak_ppr"]]
        argv += ["--prefix", prefix, "--out-dir", workdir]
        return [wrap_argv(argv, params)]
