from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import os, shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task
from atacflow.tasks.utils import wrap_argv, random_source

TN5_SHIFT_AWK = 'BEGIN{OFS="\\t"}{if ($6 == "+") {$2 = $2 + 4} else if ($6 == "-") {$3 = $3 - 5} print $0}'
SE_TA_AWK = 'BEGIN{OFS="\\t"}{$4="N"; $5="1000"; print $0}'
PE_TA_AWK = (
    'BEGIN{OFS="\\t"}{printf "%s\\t%s\\t%s\\tN\\t1000\\t%s\\n%s\\t%s\\t%s\\tN\\t1000\\t%s\\n",'
    '$1,$2,$3,$9,$4,$5,$6,$10}'
)


@register_task("bam2ta")
class Bam2TaTask(Task):
    """
    Deduplicated BAM -> tagAlign (fragment records).

    PE reads are name-sorted and converted through BEDPE so both mates are
    kept as separate records. Tn5 shifting (+4/-5) is applied unless disabled.
    `subsample` > 0 keeps that many reads (or read pairs) after removing
    `mito_chr_name`.
    """

    TYPE = "bam2ta"

    INPUTS = {
        "bam": {"type": "path", "required": True, "desc": "Filtered, deduplicated BAM"},
    }
    OUTPUTS = {
        "ta": {"name": "{prefix}.tagAlign.gz"},
    }
    DEFAULTS: Dict[str, Any] = {
        "paired_end": True,
        "disable_tn5_shift": False,
        "subsample": 0,
        "mito_chr_name": "chrM",
        "samtools_bin": "samtools",
        "bedtools_bin": "bedtools",
    }
    RESOURCES = {"threads": 2, "mem_gb": 8, "time_hr": 12, "queue": "hard"}

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        ta = outputs["ta"]
        q_ta = shlex.quote(ta)
        tmp = os.path.join(workdir, f"{prefix}.tmp.tagAlign.gz")
        q_tmp = shlex.quote(tmp)
        bedtools = params["bedtools_bin"]
        lines: List[Sequence[str] | str] = []

        if params["paired_end"]:
            nmsrt = os.path.join(workdir, f"{prefix}.nmsrt.bam")
            lines.append(wrap_argv([params["samtools_bin"], "sort", "-n", "-@", str(threads), "-o", nmsrt, inputs["bam"]], params))
            lines.append(
                f"{wrap_argv([bedtools, 'bamtobed', '-bedpe', '-mate1', '-i', nmsrt], params)}"
                f" | awk {shlex.quote(PE_TA_AWK)} | gzip -nc > {q_ta}"
            )
            lines.append(["rm", "-f", nmsrt])
        else:
            lines.append(
                f"{wrap_argv([bedtools, 'bamtobed', '-i', inputs['bam']], params)}"
                f" | awk {shlex.quote(SE_TA_AWK)} | gzip -nc > {q_ta}"
            )

        subsample = int(params.get("subsample") or 0)
        if subsample > 0:
            mito = shlex.quote(f"^{params['mito_chr_name']}\\b")
            seed = f"$(zcat -f {q_ta} | wc -c)"
            if params["paired_end"]:
                # keep mates together: join 2 lines, sample pairs, split back
                lines.append(
                    f"zcat -f {q_ta} | {{ grep -v -P {mito} || true; }} | sed 'N;s/\\n/\\t/'"
                    f" | shuf -n {subsample} --random-source={random_source(seed)}"
                    " | awk 'BEGIN{OFS=\"\\t\"}{print $1,$2,$3,$4,$5,$6\"\\n\"$7,$8,$9,$10,$11,$12}'"
                    f" | gzip -nc > {q_tmp}"
                )
            else:
                lines.append(
                    f"zcat -f {q_ta} | {{ grep -v -P {mito} || true; }}"
                    f" | shuf -n {subsample} --random-source={random_source(seed)} | gzip -nc > {q_tmp}"
                )
            lines.append(["mv", tmp, ta])

        if not params.get("disable_tn5_shift"):
            lines.append(f"zcat -f {q_ta} | awk {shlex.quote(TN5_SHIFT_AWK)} | gzip -nc > {q_tmp}")
            lines.append(["mv", tmp, ta])
        return lines
