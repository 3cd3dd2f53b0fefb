from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import os, shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task
from atacflow.tasks.utils import wrap_argv

# PBC (PCR bottleneck) metrics from the dup-marked reads:
# TotalReadPairs DistinctReadPairs OneReadPair TwoReadPairs NRF PBC1 PBC2
PBC_AWK = (
    'BEGIN{mt=0;m0=0;m1=0;m2=0} ($1==1){m1=m1+1} ($1==2){m2=m2+1} {m0=m0+1} {mt=mt+$1} '
    'END{printf "%d\\t%d\\t%d\\t%d\\t%f\\t%f\\t%f\\n", mt, m0, m1, m2, '
    '(mt>0?m0/mt:0), (m0>0?m1/m0:0), (m2>0?m1/m2:0)}'
)


@register_task("filter.nodup")
class FilterNodupTask(Task):
    """
    MAPQ filter, duplicate marking/removal and optional chromosome removal.

    INPUTS:
      bam : coordinate-sorted raw BAM
    OUTPUTS:
      nodup_bam / nodup_bai : filtered, deduplicated BAM + index
      flagstat_qc           : samtools flagstat of nodup_bam
      dup_qc                : duplicate metrics from picard/sambamba
      pbc_qc                : library complexity (NRF, PBC1, PBC2)
    PARAMS:
      mapq_thresh    : reads below this MAPQ are dropped
      dup_marker     : picard | sambamba
      no_dup_removal : keep duplicates (marked only)
      filter_chrs    : chromosome names removed from the final BAM (e.g. chrM)
      paired_end     : keep properly paired reads only
    """

    TYPE = "filter.nodup"

    INPUTS = {
        "bam": {"type": "path", "required": True, "desc": "Raw aligned BAM"},
    }
    OUTPUTS = {
        "nodup_bam":   {"name": "{prefix}.nodup.bam"},
        "nodup_bai":   {"name": "{prefix}.nodup.bam.bai"},
        "flagstat_qc": {"name": "{prefix}.nodup.flagstat.qc"},
        "dup_qc":      {"name": "{prefix}.dup.qc"},
        "pbc_qc":      {"name": "{prefix}.pbc.qc"},
    }
    DEFAULTS: Dict[str, Any] = {
        "paired_end": True,
        "mapq_thresh": 30,
        "dup_marker": "picard",
        "no_dup_removal": False,
        "filter_chrs": ["chrM", "MT"],
        "samtools_bin": "samtools",
        "picard_bin": "picard",
        "sambamba_bin": "sambamba",
        "bedtools_bin": "bedtools",
        "java_xmx_gb": 4,
    }
    RESOURCES = {"threads": 4, "mem_gb": 8, "time_hr": 24, "queue": "hard"}

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        samtools = params["samtools_bin"]
        pe = bool(params["paired_end"])
        flag_args = ["-F", "1804"] + (["-f", "2"] if pe else [])
        filt = os.path.join(workdir, f"{prefix}.filt.bam")
        dupmark = os.path.join(workdir, f"{prefix}.dupmark.bam")
        nodup = outputs["nodup_bam"]

        lines: List[Sequence[str] | str] = []
        view = [samtools, "view", *flag_args, "-q", str(int(params["mapq_thresh"])), "-u", inputs["bam"]]
        sort = [samtools, "sort", "-@", str(threads), "-o", filt, "-"]
        lines.append(f"{wrap_argv(view, params)} | {wrap_argv(sort, params)}")

        marker = str(params["dup_marker"]).lower()
        if marker == "picard":
            mark = [
                params["picard_bin"], f"-Xmx{int(params['java_xmx_gb'])}G", "MarkDuplicates",
                f"INPUT={filt}", f"OUTPUT={dupmark}", f"METRICS_FILE={outputs['dup_qc']}",
                "VALIDATION_STRINGENCY=LENIENT", "ASSUME_SORTED=true", "REMOVE_DUPLICATES=false",
            ]
        elif marker == "sambamba":
            mark = [params["sambamba_bin"], "markdup", "-t", str(threads), "--hash-table-size=17592186044416",
                    "--overflow-list-size=20000000", "--io-buffer-size=256", filt, dupmark]
        else:
            raise ValueError(f"[{self.TYPE}] unknown dup_marker: {marker}")
        if marker == "sambamba":
            lines.append(f"{wrap_argv(mark, params)} 2> {shlex.quote(outputs['dup_qc'])}")
        else:
            lines.append(wrap_argv(mark, params))

        if params.get("no_dup_removal"):
            lines.append(["cp", dupmark, nodup])
        else:
            lines.append(wrap_argv([samtools, "view", *flag_args, "-b", "-o", nodup, dupmark], params))
        lines.append(wrap_argv([samtools, "index", nodup], params))

        chrs = [c for c in (params.get("filter_chrs") or []) if c]
        if chrs:
            keep_tmp = os.path.join(workdir, f"{prefix}.chrfilt.bam")
            excl = " ".join(f"-e {shlex.quote(c)}" for c in [*chrs, "*"])
            lines.append(
                f"{wrap_argv([samtools, 'idxstats', nodup], params)} | cut -f1 | {{ grep -v -x {excl} || true; }}"
                f" | xargs {wrap_argv([samtools, 'view', '-b', '-o', keep_tmp, nodup], params)}"
            )
            lines.append(["mv", keep_tmp, nodup])
            lines.append(wrap_argv([samtools, "index", nodup], params))

        lines.append(f"{wrap_argv([samtools, 'flagstat', nodup], params)} > {shlex.quote(outputs['flagstat_qc'])}")
        lines.append(
            f"{wrap_argv([params['bedtools_bin'], 'bamtobed', '-i', dupmark], params)}"
            " | awk 'BEGIN{OFS=\"\\t\"}{print $1,$2,$3,$6}' | sort | uniq -c"
            f" | awk {shlex.quote(PBC_AWK)} > {shlex.quote(outputs['pbc_qc'])}"
        )
        lines.append(["rm", "-f", filt, dupmark])
        return lines
