from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task
from atacflow.tasks.utils import wrap_argv


@register_task("bowtie2.align")
class Bowtie2AlignTask(Task):
    """
    bowtie2 alignment -> coordinate-sorted BAM + index + flagstat.

    Runs:
      bowtie2 -X2000 --mm --threads N -x {idx_prefix} -1 R1 -2 R2 2> align.log
        | samtools view -Su - | samtools sort -@ N -o {prefix}.bam -
      samtools index {prefix}.bam
      samtools flagstat {prefix}.bam > {prefix}.flagstat.qc
    """

    TYPE = "bowtie2.align"

    INPUTS = {
        "fastq1": {"type": "path", "required": True,  "desc": "Merged R1 FASTQ"},
        "fastq2": {"type": "path", "required": False, "desc": "Merged R2 FASTQ (paired-end)"},
    }
    OUTPUTS = {
        "bam":         {"name": "{prefix}.bam"},
        "bai":         {"name": "{prefix}.bam.bai"},
        "flagstat_qc": {"name": "{prefix}.flagstat.qc"},
        "align_log":   {"name": "{prefix}.align.log"},
    }
    DEFAULTS: Dict[str, Any] = {
        "idx_prefix": None,
        "multimapping": 0,
        "max_fragment_len": 2000,
        "bowtie2_bin": "bowtie2",
        "samtools_bin": "samtools",
    }
    RESOURCES = {"threads": 4, "mem_gb": 16, "time_hr": 48, "queue": "hard"}

    def _check_inputs(self) -> None:
        super()._check_inputs()
        if not self.params.get("idx_prefix"):
            raise ValueError(f"[{self.TYPE}] PARAMS.idx_prefix (bowtie2 index) is required")

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        samtools = params["samtools_bin"]
        bt2 = [
            params["bowtie2_bin"],
            "-X", str(int(params["max_fragment_len"])),
            "--mm",
            "--threads", str(threads),
            "-x", params["idx_prefix"],
        ]
        multimapping = int(params.get("multimapping") or 0)
        if multimapping > 0:
            bt2 += ["-k", str(multimapping + 1)]
        if inputs.get("fastq2"):
            bt2 += ["-1", inputs["fastq1"], "-2", inputs["fastq2"]]
        else:
            bt2 += ["-U", inputs["fastq1"]]

        align_log = shlex.quote(outputs["align_log"])
        bam = outputs["bam"]
        return [
            f"{wrap_argv(bt2, params)} 2> {align_log}"
            f" | {wrap_argv([samtools, 'view', '-Su', '-'], params)}"
            f" | {wrap_argv([samtools, 'sort', '-@', str(threads), '-o', bam, '-'], params)}",
            wrap_argv([samtools, "index", bam], params),
            f"{wrap_argv([samtools, 'flagstat', bam], params)} > {shlex.quote(outputs['flagstat_qc'])}",
        ]
