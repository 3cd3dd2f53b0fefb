from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task
from atacflow.tasks.utils import wrap_argv


@register_task("cutadapt.trim")
class TrimAdapterTask(Task):
    """
    Adapter trimming of one FASTQ pair (or one single-ended FASTQ).

    INPUTS:
      fastq1 : R1 FASTQ(.gz)               (required)
      fastq2 : R2 FASTQ(.gz)               (paired-end only)
    OUTPUTS:
      trim_R1 : {prefix}.trim.R1.fastq.gz
      trim_R2 : {prefix}.trim.R2.fastq.gz  (only when fastq2 is given)
    PARAMS:
      adapter / adapter2 : Nextera transposase sequence by default
      min_trim_len       : drop reads shorter than this after trimming
      err_rate           : max error rate in the adapter match
    """

    TYPE = "cutadapt.trim"

    INPUTS = {
        "fastq1": {"type": "path", "required": True,  "desc": "R1 FASTQ(.gz)"},
        "fastq2": {"type": "path", "required": False, "desc": "R2 FASTQ(.gz) (paired-end)"},
    }
    OUTPUTS = {
        "trim_R1": {"name": "{prefix}.trim.R1.fastq.gz", "desc": "Trimmed R1"},
        "trim_R2": {"name": "{prefix}.trim.R2.fastq.gz", "when": "fastq2", "desc": "Trimmed R2"},
    }
    DEFAULTS: Dict[str, Any] = {
        "adapter": "CTGTCTCTTATA",
        "adapter2": "CTGTCTCTTATA",
        "min_trim_len": 5,
        "err_rate": 0.1,
        "cutadapt_bin": "cutadapt",
    }
    RESOURCES = {"threads": 2, "mem_gb": 4, "time_hr": 24, "queue": "hard"}

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        argv = [
            params["cutadapt_bin"],
            "--cores", str(threads),
            "-m", str(int(params["min_trim_len"])),
            "-e", str(float(params["err_rate"])),
            "-a", params["adapter"],
        ]
        if inputs.get("fastq2"):
            argv += ["-A", params["adapter2"] or params["adapter"]]
            argv += ["-o", outputs["trim_R1"], "-p", outputs["trim_R2"]]
            argv += [inputs["fastq1"], inputs["fastq2"]]
        else:
            argv += ["-o", outputs["trim_R1"], inputs["fastq1"]]
        return [wrap_argv(argv, params)]
