from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task


@register_task("merge.fastq")
class MergeFastqTask(Task):
    """Concatenate the trimmed FASTQs of one replicate (one file per mate)."""

    TYPE = "merge.fastq"

    INPUTS = {
        "fastqs1": {"type": "paths", "required": True,  "desc": "Trimmed R1 FASTQs, in pair order"},
        "fastqs2": {"type": "paths", "required": False, "desc": "Trimmed R2 FASTQs, in pair order"},
    }
    OUTPUTS = {
        "merged_R1": {"name": "{prefix}.merged.R1.fastq.gz"},
        "merged_R2": {"name": "{prefix}.merged.R2.fastq.gz", "when": "fastqs2"},
    }
    DEFAULTS: Dict[str, Any] = {}
    RESOURCES = {"threads": 1, "mem_gb": 2, "time_hr": 6, "queue": "short"}

    def _check_inputs(self) -> None:
        super()._check_inputs()
        r2 = self.inputs.get("fastqs2") or []
        if r2 and len(r2) != len(self.inputs["fastqs1"]):
            raise ValueError(f"[{self.TYPE}] R1/R2 FASTQ counts differ: "
                             f"{len(self.inputs['fastqs1'])} vs {len(r2)}")

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        lines: List[str] = []
        for key, out_key in (("fastqs1", "merged_R1"), ("fastqs2", "merged_R2")):
            files = inputs.get(key) or []
            if not files:
                continue
            srcs = " ".join(shlex.quote(str(f)) for f in files)
            lines.append(f"zcat -f {srcs} | gzip -nc > {shlex.quote(outputs[out_key])}")
        return lines
