from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import os, shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task
from atacflow.tasks.utils import random_source

PE_SPLIT_AWK = 'BEGIN{OFS="\\t"}{printf "%s\\t%s\\t%s\\t%s\\t%s\\t%s\\n%s\\t%s\\t%s\\t%s\\t%s\\t%s\\n",$1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12}'


@register_task("spr")
class SprTask(Task):
    """
    Split one replicate's tagAlign into two pseudo-replicates (random halves).
    Mates of a pair always land in the same half.
    """

    TYPE = "spr"

    INPUTS = {
        "ta": {"type": "path", "required": True, "desc": "tagAlign of one replicate"},
    }
    OUTPUTS = {
        "ta_pr1": {"name": "{prefix}.pr1.tagAlign.gz"},
        "ta_pr2": {"name": "{prefix}.pr2.tagAlign.gz"},
    }
    DEFAULTS: Dict[str, Any] = {
        "paired_end": True,
        # 0: seed from the input size (same input -> same split)
        "pseudoreplication_random_seed": 0,
    }
    RESOURCES = {"threads": 1, "mem_gb": 4, "time_hr": 4, "queue": "short"}

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        ta = shlex.quote(inputs["ta"])
        split_prefix = os.path.join(workdir, f"{prefix}.split.")
        seed = int(params.get("pseudoreplication_random_seed") or 0)
        seed_expr = seed if seed > 0 else f"$(zcat -f {ta} | wc -c)"
        rnd = random_source(seed_expr)
        q_split = shlex.quote(split_prefix)
        pr1, pr2 = shlex.quote(outputs["ta_pr1"]), shlex.quote(outputs["ta_pr2"])

        if params["paired_end"]:
            return [
                f"nlines=$(zcat -f {ta} | sed 'N;s/\\n/\\t/' | wc -l)",
                "nlines=$(( (nlines + 1) / 2 ))",
                f"zcat -f {ta} | sed 'N;s/\\n/\\t/' | shuf --random-source={rnd} | split -d -l $nlines - {q_split}",
                f"awk {shlex.quote(PE_SPLIT_AWK)} {q_split}00 | gzip -nc > {pr1}",
                f"awk {shlex.quote(PE_SPLIT_AWK)} {q_split}01 | gzip -nc > {pr2}",
                f"rm -f {q_split}00 {q_split}01",
            ]
        return [
            f"nlines=$(zcat -f {ta} | wc -l)",
            "nlines=$(( (nlines + 1) / 2 ))",
            f"zcat -f {ta} | shuf --random-source={rnd} | split -d -l $nlines - {q_split}",
            f"gzip -nc {q_split}00 > {pr1}",
            f"gzip -nc {q_split}01 > {pr2}",
            f"rm -f {q_split}00 {q_split}01",
        ]
