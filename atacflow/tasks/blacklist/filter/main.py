from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task

CLIP_SCORE_AWK = 'BEGIN{OFS="\\t"} {if ($5>1000) $5=1000; print $0}'


@register_task("blacklist.filter")
class BlacklistFilterTask(Task):
    """
    Drop peaks overlapping blacklisted regions and peaks on irregular
    chromosomes (names not matching `regex_bfilt_peak_chr_name`).
    Without a blacklist only the chromosome filter applies.
    When the source tagAlign is given, FRiP of the filtered peaks is written too.
    """

    TYPE = "blacklist.filter"

    INPUTS = {
        "peak":      {"type": "path", "required": True,  "desc": "Peak file (narrowPeak/IDR/overlap)"},
        "blacklist": {"type": "path", "required": False, "desc": "Blacklist BED(.gz)"},
        "ta":        {"type": "path", "required": False, "desc": "tagAlign the peaks came from (for FRiP)"},
    }
    OUTPUTS = {
        "bfilt_peak": {"name": "{prefix}.bfilt.narrowPeak.gz"},
        "frip_qc":    {"name": "{prefix}.frip.qc", "when": "ta"},
    }
    DEFAULTS: Dict[str, Any] = {
        "regex_bfilt_peak_chr_name": "chr[\\dXY]+",
        "bedtools_bin": "bedtools",
    }
    RESOURCES = {"threads": 1, "mem_gb": 4, "time_hr": 2, "queue": "short"}

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        peak = shlex.quote(inputs["peak"])
        bfilt = shlex.quote(outputs["bfilt_peak"])
        chr_re = shlex.quote(f"^{params['regex_bfilt_peak_chr_name']}\\b")
        bedtools = shlex.quote(params["bedtools_bin"])

        if inputs.get("blacklist"):
            src = (f"{bedtools} intersect -nonamecheck -v -a <(zcat -f {peak})"
                   f" -b <(zcat -f {shlex.quote(inputs['blacklist'])})")
        else:
            src = f"zcat -f {peak}"
        lines: List[Sequence[str] | str] = [
            f"{src} | awk {shlex.quote(CLIP_SCORE_AWK)} | {{ grep -P {chr_re} || true; }} | gzip -nc > {bfilt}",
        ]

        if inputs.get("ta"):
            ta = shlex.quote(inputs["ta"])
            lines += [
                f"val1=$({bedtools} intersect -nonamecheck -a <(zcat -f {ta}) -b <(zcat -f {bfilt}) -wa -u | wc -l)",
                f"val2=$(zcat -f {ta} | wc -l)",
                "awk -v a=\"$val1\" -v b=\"$val2\" 'BEGIN{printf \"%f\\n\", (b>0 ? a/b : 0)}'"
                f" > {shlex.quote(outputs['frip_qc'])}",
            ]
        return lines
