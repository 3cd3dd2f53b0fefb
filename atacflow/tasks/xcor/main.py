from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import os, shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task
from atacflow.tasks.utils import wrap_argv, random_source


@register_task("xcor")
class XcorTask(Task):
    """
    Strand cross-correlation (phantompeakqualtools run_spp.R) on a subsample
    of the tagAlign. For paired-end data only mate 1 is used.
    Writes the score table, plot, and the estimated fragment length.
    """

    TYPE = "xcor"

    INPUTS = {
        "ta": {"type": "path", "required": True, "desc": "tagAlign of one replicate"},
    }
    OUTPUTS = {
        "plot_pdf": {"name": "{prefix}.cc.plot.pdf"},
        "score":    {"name": "{prefix}.cc.qc"},
        "fraglen":  {"name": "{prefix}.cc.fraglen.txt"},
    }
    DEFAULTS: Dict[str, Any] = {
        "paired_end": True,
        "subsample": 25000000,
        "mito_chr_name": "chrM",
        "speak": -1,
        "exclusion_range_min": None,
        "exclusion_range_max": None,
        "rscript_bin": "Rscript",
        "run_spp": "run_spp.R",
    }
    RESOURCES = {"threads": 2, "mem_gb": 8, "time_hr": 6, "queue": "short"}

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        ta = shlex.quote(inputs["ta"])
        sub = os.path.join(workdir, f"{prefix}.subsample.tagAlign.gz")
        mito = params["mito_chr_name"]
        lines: List[Sequence[str] | str] = []

        mito_re = shlex.quote("^" + mito + "\\b")
        mate1 = " | awk 'NR%2==1'" if params["paired_end"] else ""
        lines.append(
            f"zcat -f {ta} | {{ grep -v -P {mito_re} || true; }}{mate1}"
            f" | shuf -n {int(params['subsample'])} --random-source={random_source(f'$(zcat -f {ta} | wc -c)')}"
            f" | gzip -nc > {shlex.quote(sub)}"
        )

        spp = [
            params["rscript_bin"], "--max-ppsize=500000", params["run_spp"],
            "-rf", f"-c={sub}", f"-p={threads}", f"-filtchr=.*{mito}.*",
            f"-savp={outputs['plot_pdf']}", f"-out={outputs['score']}",
        ]
        if int(params.get("speak", -1)) >= 0:
            spp.append(f"-speak={int(params['speak'])}")
        if params.get("exclusion_range_min") is not None:
            spp.append(f"-x={int(params['exclusion_range_min'])}:{int(params.get('exclusion_range_max') or 0)}")
        lines.append(wrap_argv(spp, params))

        score = shlex.quote(outputs["score"])
        # run_spp reports comma-separated candidates; keep only the top one
        lines.append(f"sed -r 's/,[^\\t]+//g' -i {score}")
        lines.append(f"awk -F'\\t' '{{print $3}}' {score} > {shlex.quote(outputs['fraglen'])}")
        lines.append(["rm", "-f", sub])
        return lines
