from __future__ import annotations
from typing import Dict, Any, List, Sequence, Optional
import os, shlex

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import register_task
from atacflow.tasks.utils import wrap_argv

# rename peaks Peak_1..N after sorting by -log10(pval), cap at N
RENAME_AWK = 'BEGIN{OFS="\\t"}{$4="Peak_"NR; if ($2<0) $2=0; if ($3<0) $3=0; if ($10==-1) $10=$2+int(($3-$2+1)/2.0); print $0}'


@register_task("macs2.callpeak")
class Macs2CallPeakTask(Task):
    """
    MACS2 peak calling on a tagAlign, ATAC style (no model, shift by -smooth_win/2,
    extend by smooth_win). Writes a fixed-name narrowPeak capped at
    `cap_num_peak`, sorted by p-value. MACS2's own `<name>_peaks.narrowPeak`
    is renamed, never globbed.

    With `enable_signal_track` the fold-enrichment and p-value bigWigs are made
    from the pileup/lambda bedGraphs.
    """

    TYPE = "macs2.callpeak"

    INPUTS = {
        "ta": {"type": "path", "required": True, "desc": "tagAlign to call peaks on"},
    }
    OUTPUTS = {
        "npeak":   {"name": "{prefix}.narrowPeak.gz"},
        "fc_bw":   {"name": "{prefix}.fc.signal.bigwig",   "when": "enable_signal_track"},
        "pval_bw": {"name": "{prefix}.pval.signal.bigwig", "when": "enable_signal_track"},
    }
    DEFAULTS: Dict[str, Any] = {
        "gensz": None,
        "chrsz": None,
        "cap_num_peak": 300000,
        "pval_thresh": 0.01,
        "smooth_win": 150,
        "enable_signal_track": False,
        "macs2_bin": "macs2",
        "bedgraph_to_bigwig_bin": "bedGraphToBigWig",
        "bedtools_bin": "bedtools",
    }
    RESOURCES = {"threads": 1, "mem_gb": 16, "time_hr": 24, "queue": "hard"}

    def _check_inputs(self) -> None:
        super()._check_inputs()
        for key in ("gensz", "chrsz"):
            if not self.params.get(key):
                raise ValueError(f"[{self.TYPE}] PARAMS.{key} is required")

    def _build_cmd(self, *, inputs, outputs, params, threads, workdir, prefix: Optional[str] = None) -> List[Sequence[str] | str]:
        smooth_win = int(params["smooth_win"])
        shiftsize = -int(round(smooth_win / 2.0))
        name = os.path.join(workdir, prefix)
        macs2 = params["macs2_bin"]

        callpeak = [
            macs2, "callpeak",
            "-t", inputs["ta"], "-f", "BED", "-n", name,
            "-g", str(params["gensz"]), "-p", str(params["pval_thresh"]),
            "--shift", str(shiftsize), "--extsize", str(smooth_win),
            "--nomodel", "-B", "--SPMR", "--keep-dup", "all", "--call-summits",
        ]
        raw_peak = f"{name}_peaks.narrowPeak"
        lines: List[Sequence[str] | str] = [
            wrap_argv(callpeak, params),
            f"sort -k 8gr,8gr {shlex.quote(raw_peak)} | awk {shlex.quote(RENAME_AWK)}"
            f" | awk 'NR<={int(params['cap_num_peak'])}' | gzip -nc > {shlex.quote(outputs['npeak'])}",
        ]

        if params.get("enable_signal_track"):
            chrsz = params["chrsz"]
            treat = f"{name}_treat_pileup.bdg"
            ctrl = f"{name}_control_lambda.bdg"
            for method, out_key in (("FE", "fc_bw"), ("ppois", "pval_bw")):
                bdg = f"{name}.{method}.bdg"
                clipped = f"{bdg}.clip"
                lines.append(wrap_argv([macs2, "bdgcmp", "-t", treat, "-c", ctrl, "-m", method,
                                        "-S", "1.0", "--o-prefix", f"{name}.{method}"], params))
                # bdgcmp writes <o-prefix>_<method>.bdg
                lines.append(["mv", f"{name}.{method}_{method}.bdg", bdg])
                lines.append(
                    f"{wrap_argv([params['bedtools_bin'], 'slop', '-i', bdg, '-g', chrsz, '-b', '0'], params)}"
                    f" | LC_COLLATE=C sort -k1,1 -k2,2n > {shlex.quote(clipped)}"
                )
                lines.append(wrap_argv([params["bedgraph_to_bigwig_bin"], clipped, chrsz, outputs[out_key]], params))
                lines.append(["rm", "-f", bdg, clipped])

        lines.append(
            "rm -f " + " ".join(shlex.quote(f"{name}{sfx}") for sfx in (
                "_peaks.narrowPeak", "_peaks.xls", "_summits.bed",
                "_treat_pileup.bdg", "_control_lambda.bdg",
            ))
        )
        return lines
