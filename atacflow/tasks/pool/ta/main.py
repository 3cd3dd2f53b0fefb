from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task


@register_task("pool.ta")
class PoolTaTask(Task):
    """Union of several tagAligns (true replicates, or all pr1 / all pr2)."""

    TYPE = "pool.ta"

    INPUTS = {
        "tas": {"type": "paths", "required": True, "desc": "tagAligns to pool, in replicate order"},
    }
    OUTPUTS = {
        "ta_pooled": {"name": "{prefix}.pooled.tagAlign.gz"},
    }
    DEFAULTS: Dict[str, Any] = {
        # keep only the first N columns when > 0
        "col": 0,
    }
    RESOURCES = {"threads": 1, "mem_gb": 4, "time_hr": 4, "queue": "short"}

    def _check_inputs(self) -> None:
        super()._check_inputs()
        if len(self.inputs["tas"]) < 2:
            raise ValueError(f"[{self.TYPE}] pooling needs at least two tagAligns")

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        srcs = " ".join(shlex.quote(str(t)) for t in inputs["tas"])
        col = int(params.get("col") or 0)
        cut = f" | cut -f 1-{col}" if col > 0 else ""
        return [f"zcat -f {srcs}{cut} | gzip -nc > {shlex.quote(outputs['ta_pooled'])}"]
