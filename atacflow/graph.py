"""
Task graph construction.

`GraphBuilder` resolves everything that decides the shape of the run (entry
type, replicate count, `true_rep_only`, `enable_idr`) up front, then emits a
concrete `TaskGraph`. Conditional subtrees are left out of the graph entirely;
nothing downstream branches on those values again.

Node ids are `kind[/variant][/repN]`:

  trim/fq1/rep1  merge/rep1  align/rep1  filter/rep1  bam2ta/rep1  xcor/rep1
  spr/rep1  pool/true  pool/pr1  pool/pr2
  peakcall/rep1  peakcall/pooled  peakcall/pr1/rep1  peakcall/ppr1
  overlap/rep1-rep2  overlap/pr/rep1  overlap/ppr  (same for idr/...)
  bfilt/<parent id>  reproducibility/overlap  reproducibility/idr

Each node works in `<work_dir>/<node id>` and names its outputs after the id.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from atacflow.config import RunConfig
from atacflow.entry import Entry, EntryType, pair_label, replicate_pairs, resolve_entry
from atacflow.errors import ConfigError, GraphBuildError
from atacflow.tasks.loader import load_task_class
from atacflow.tasks.task import Task

COMPARISON_KINDS = {
    "overlap": ("overlap.naive", "overlap_peak"),
    "idr": ("idr", "idr_peak"),
}

# kinds whose threads come from the per-replicate cpu budget
PREFIX_CHAIN_KINDS = ("cutadapt.trim", "merge.fastq", "bowtie2.align", "filter.nodup", "bam2ta")


def rep_tag(rep: int) -> str:
    return f"rep{rep + 1}"


def make_node_id(kind_tag: str, variant: Optional[str] = None, rep: Optional[int] = None) -> str:
    parts = [kind_tag]
    if variant:
        parts.append(variant)
    if rep is not None:
        parts.append(rep_tag(rep))
    return "/".join(parts)


@dataclass(frozen=True)
class OutputRef:
    """Reference to a declared output slot of an already-built node."""

    node_id: str
    slot: str


@dataclass(frozen=True)
class TaskNode:
    node_id: str
    kind: str
    task: Task = field(compare=False)
    upstream: Tuple[str, ...] = ()
    replicate: Optional[int] = None
    variant: Optional[str] = None

    @property
    def queue(self) -> str:
        return self.task.queue

    @property
    def threads(self) -> int:
        return self.task.threads

    @property
    def outputs(self) -> Mapping[str, str]:
        return MappingProxyType(self.task.outputs)


class TaskGraph:
    """
    Read-only DAG. Nodes are stored in construction order, which is a valid
    topological order (a node can only reference nodes built before it).
    """

    def __init__(self, nodes: Dict[str, TaskNode], entry: Entry, summaries: Optional[Dict[str, str]] = None):
        self._nodes: Mapping[str, TaskNode] = MappingProxyType(dict(nodes))
        self.entry = entry
        self.summaries: Mapping[str, str] = MappingProxyType(dict(summaries or {}))
        self.edges: Tuple[Tuple[str, str], ...] = tuple(
            (up, n.node_id) for n in self._nodes.values() for up in n.upstream
        )
        down: Dict[str, List[str]] = {nid: [] for nid in self._nodes}
        for up, nid in self.edges:
            down[up].append(nid)
        self._downstream: Mapping[str, Tuple[str, ...]] = MappingProxyType(
            {k: tuple(v) for k, v in down.items()}
        )

    @property
    def nodes(self) -> Mapping[str, TaskNode]:
        return self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[TaskNode]:
        return iter(self._nodes.values())

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __getitem__(self, node_id: str) -> TaskNode:
        return self._nodes[node_id]

    def upstream(self, node_id: str) -> Tuple[str, ...]:
        return self._nodes[node_id].upstream

    def downstream(self, node_id: str) -> Tuple[str, ...]:
        return self._downstream[node_id]

    def descendants(self, node_id: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self._downstream[node_id])
        while stack:
            nid = stack.pop()
            if nid in seen:
                continue
            seen.add(nid)
            stack.extend(self._downstream[nid])
        return seen

    def of_kind(self, kind: str) -> List[TaskNode]:
        return [n for n in self._nodes.values() if n.kind == kind]

    def node_ids(self, prefix: str = "") -> List[str]:
        return [nid for nid in self._nodes if nid.startswith(prefix)]

    def describe(self) -> Dict[str, Any]:
        """Plain-dict plan: entry, nodes (with commands) and edges."""
        return {
            "entry_type": str(self.entry.entry_type),
            "replicate_count": self.entry.replicate_count,
            "summaries": dict(self.summaries),
            "nodes": {
                n.node_id: {
                    "kind": n.kind,
                    "replicate": n.replicate,
                    "queue": n.queue,
                    "resources": n.task.resources(),
                    "upstream": list(n.upstream),
                    "inputs": n.task.inputs,
                    "outputs": dict(n.task.outputs),
                    "cmd": n.task.to_sh(),
                }
                for n in self._nodes.values()
            },
            "edges": [list(e) for e in self.edges],
        }


class GraphBuilder:
    """Builds the full conditional task graph for one run configuration."""

    def __init__(self, config: RunConfig):
        self.config = config
        self._nodes: Dict[str, TaskNode] = {}
        self._summaries: Dict[str, str] = {}

    @property
    def nodes(self) -> Mapping[str, TaskNode]:
        return MappingProxyType(self._nodes)

    def snapshot(self, entry: Entry) -> TaskGraph:
        return TaskGraph(self._nodes, entry, self._summaries)

    # ---- low level
    def _resolve(self, consumer: str, value: Any, upstream: List[str]) -> Any:
        if isinstance(value, OutputRef):
            producer = self._nodes.get(value.node_id)
            if producer is None:
                raise GraphBuildError(f"{consumer}: upstream node '{value.node_id}' does not exist in this graph")
            if value.slot not in producer.task.outputs:
                raise GraphBuildError(
                    f"{consumer}: '{value.node_id}' declares no output slot '{value.slot}' "
                    f"(has {sorted(producer.task.outputs)})"
                )
            if value.node_id not in upstream:
                upstream.append(value.node_id)
            return producer.task.outputs[value.slot]
        if isinstance(value, (list, tuple)):
            return [self._resolve(consumer, v, upstream) for v in value]
        return str(value)

    def _kind_params(self, kind: str) -> Dict[str, Any]:
        cfg = self.config
        g = cfg.genome
        run_level: Dict[str, Dict[str, Any]] = {
            "bowtie2.align": {"idx_prefix": g.bowtie2_idx_prefix},
            "filter.nodup": {"paired_end": cfg.paired_end},
            "bam2ta": {"paired_end": cfg.paired_end, "mito_chr_name": g.mito_chr_name},
            "xcor": {"paired_end": cfg.paired_end, "mito_chr_name": g.mito_chr_name},
            "spr": {"paired_end": cfg.paired_end},
            "macs2.callpeak": {
                "gensz": g.gensz,
                "chrsz": g.chrsz,
                "cap_num_peak": cfg.cap_num_peak,
                "pval_thresh": cfg.pval_thresh,
                "smooth_win": cfg.smooth_win,
                "enable_signal_track": cfg.enable_signal_track,
            },
            "blacklist.filter": {"regex_bfilt_peak_chr_name": g.regex_bfilt_peak_chr_name},
            "idr": {"idr_thresh": cfg.idr_thresh},
        }
        return {**run_level.get(kind, {}), **cfg.params_for(kind)}

    def add_node(
        self,
        node_id: str,
        kind: str,
        inputs: Dict[str, Any],
        *,
        replicate: Optional[int] = None,
        variant: Optional[str] = None,
        threads: Optional[int] = None,
    ) -> str:
        """
        Add one node. Every OutputRef in `inputs` must point at an existing
        node and one of its declared output slots, otherwise GraphBuildError.
        `None` inputs are dropped (optional slot not used).
        """
        if node_id in self._nodes:
            raise GraphBuildError(f"duplicate node id: {node_id}")
        upstream: List[str] = []
        resolved = {k: self._resolve(node_id, v, upstream) for k, v in inputs.items() if v is not None}
        cls = load_task_class(kind)
        try:
            task = cls(
                name=node_id,
                workdir=Path(self.config.work_dir) / node_id,
                inputs=resolved,
                params=self._kind_params(kind),
                threads=threads,
            )
        except ValueError as e:
            raise GraphBuildError(f"{node_id}: {e}") from e
        self._nodes[node_id] = TaskNode(
            node_id=node_id,
            kind=kind,
            task=task,
            upstream=tuple(upstream),
            replicate=replicate,
            variant=variant,
        )
        return node_id

    def _add_bfilt(self, parent_id: str, slot: str, ta: Any = None) -> OutputRef:
        nid = self.add_node(
            f"bfilt/{parent_id}",
            "blacklist.filter",
            {"peak": OutputRef(parent_id, slot), "blacklist": self.config.genome.blacklist, "ta": ta},
            replicate=self._nodes[parent_id].replicate,
        )
        return OutputRef(nid, "bfilt_peak")

    def _add_peakcall(self, ta: Any, variant: Optional[str] = None, rep: Optional[int] = None) -> str:
        nid = self.add_node(make_node_id("peakcall", variant, rep), "macs2.callpeak", {"ta": ta},
                            replicate=rep, variant=variant)
        self._add_bfilt(nid, "npeak", ta=ta)
        return nid

    # ---- per replicate
    def _prefix_chain(self, entry_type: EntryType, rep: int, threads: int) -> Any:
        """Entry-dependent chain for one replicate; returns its tagAlign (ref or input path)."""
        cfg = self.config
        if entry_type is EntryType.FRAGMENTS:
            return cfg.tas[rep]

        if entry_type is EntryType.DEDUPLICATED:
            nodup_bam: Any = cfg.nodup_bams[rep]
        else:
            if entry_type is EntryType.ALIGNED:
                raw_bam: Any = cfg.bams[rep]
            else:
                trims = []
                for k, group in enumerate(cfg.fastqs[rep], 1):
                    trims.append(self.add_node(
                        make_node_id("trim", f"fq{k}", rep), "cutadapt.trim",
                        {"fastq1": group[0], "fastq2": group[1] if len(group) > 1 else None},
                        replicate=rep, variant=f"fq{k}", threads=threads,
                    ))
                merge = self.add_node(
                    make_node_id("merge", rep=rep), "merge.fastq",
                    {
                        "fastqs1": [OutputRef(t, "trim_R1") for t in trims],
                        "fastqs2": [OutputRef(t, "trim_R2") for t in trims] if cfg.paired_end else None,
                    },
                    replicate=rep, threads=threads,
                )
                align = self.add_node(
                    make_node_id("align", rep=rep), "bowtie2.align",
                    {
                        "fastq1": OutputRef(merge, "merged_R1"),
                        "fastq2": OutputRef(merge, "merged_R2") if cfg.paired_end else None,
                    },
                    replicate=rep, threads=threads,
                )
                raw_bam = OutputRef(align, "bam")
            filt = self.add_node(make_node_id("filter", rep=rep), "filter.nodup", {"bam": raw_bam},
                                 replicate=rep, threads=threads)
            nodup_bam = OutputRef(filt, "nodup_bam")

        bam2ta = self.add_node(make_node_id("bam2ta", rep=rep), "bam2ta", {"bam": nodup_bam},
                               replicate=rep, threads=threads)
        return OutputRef(bam2ta, "ta")

    # ---- comparisons
    def _add_comparisons(self, method: str, num_rep: int, use_pr: bool) -> None:
        kind, slot = COMPARISON_KINDS[method]
        pooled_peak = OutputRef("peakcall/pooled", "npeak")

        pairwise: List[OutputRef] = []
        if num_rep > 1:
            for i, j in replicate_pairs(num_rep):
                nid = self.add_node(
                    f"{method}/{pair_label(i, j)}", kind,
                    {
                        "peak1": OutputRef(make_node_id("peakcall", rep=i), "npeak"),
                        "peak2": OutputRef(make_node_id("peakcall", rep=j), "npeak"),
                        "peak_pooled": pooled_peak,
                    },
                    variant=pair_label(i, j),
                )
                pairwise.append(self._add_bfilt(nid, slot))

        if not use_pr:
            return

        per_rep: List[OutputRef] = []
        for rep in range(num_rep):
            nid = self.add_node(
                make_node_id(method, "pr", rep), kind,
                {
                    "peak1": OutputRef(make_node_id("peakcall", "pr1", rep), "npeak"),
                    "peak2": OutputRef(make_node_id("peakcall", "pr2", rep), "npeak"),
                    "peak_pooled": OutputRef(make_node_id("peakcall", rep=rep), "npeak"),
                },
                replicate=rep, variant="pr",
            )
            per_rep.append(self._add_bfilt(nid, slot))

        ppr: Optional[OutputRef] = None
        if num_rep > 1:
            nid = self.add_node(
                f"{method}/ppr", kind,
                {
                    "peak1": OutputRef("peakcall/ppr1", "npeak"),
                    "peak2": OutputRef("peakcall/ppr2", "npeak"),
                    "peak_pooled": pooled_peak,
                },
                variant="ppr",
            )
            ppr = self._add_bfilt(nid, slot)

        summary = self.add_node(
            f"reproducibility/{method}", "reproducibility.qc",
            {"peaks": pairwise or None, "peaks_pr": per_rep, "peak_ppr": ppr},
            variant=method,
        )
        self._summaries[method] = summary

    # ---- entry point
    def build(self) -> TaskGraph:
        cfg = self.config
        entry = resolve_entry(cfg.fastqs, cfg.bams, cfg.nodup_bams, cfg.tas, total_cpu=cfg.cpu)
        if entry.entry_type is EntryType.READS and not cfg.genome.bowtie2_idx_prefix:
            raise ConfigError("GENOME.bowtie2_idx_prefix is required when starting from fastqs")
        for kind in PREFIX_CHAIN_KINDS:
            if "threads" in cfg.params_for(kind):
                raise ConfigError(
                    f"TASK_PARAMS.{kind}.threads is not allowed: prefix-chain tasks get PIPELINE.cpu / replicates"
                )

        num_rep = entry.replicate_count
        use_pr = not cfg.true_rep_only
        per_rep_cpu = cfg.cpu // num_rep
        self._nodes = {}
        self._summaries = {}

        tas = [self._prefix_chain(entry.entry_type, rep, per_rep_cpu) for rep in range(num_rep)]

        for rep, ta in enumerate(tas):
            self.add_node(make_node_id("xcor", rep=rep), "xcor", {"ta": ta}, replicate=rep)

        if use_pr:
            for rep, ta in enumerate(tas):
                self.add_node(make_node_id("spr", rep=rep), "spr", {"ta": ta}, replicate=rep)

        for rep, ta in enumerate(tas):
            self._add_peakcall(ta, rep=rep)

        if num_rep > 1:
            self.add_node("pool/true", "pool.ta", {"tas": tas}, variant="true")
            self._add_peakcall(OutputRef("pool/true", "ta_pooled"), variant="pooled")
            if use_pr:
                for pr in ("pr1", "pr2"):
                    self.add_node(
                        f"pool/{pr}", "pool.ta",
                        {"tas": [OutputRef(make_node_id("spr", rep=rep), f"ta_{pr}") for rep in range(num_rep)]},
                        variant=pr,
                    )

        if use_pr:
            for rep in range(num_rep):
                for pr in ("pr1", "pr2"):
                    self._add_peakcall(OutputRef(make_node_id("spr", rep=rep), f"ta_{pr}"), variant=pr, rep=rep)
            if num_rep > 1:
                for pr in ("pr1", "pr2"):
                    self._add_peakcall(OutputRef(f"pool/{pr}", "ta_pooled"), variant=f"p{pr}")

        self._add_comparisons("overlap", num_rep, use_pr)
        if cfg.enable_idr:
            self._add_comparisons("idr", num_rep, use_pr)

        return self.snapshot(entry)


def build_graph(config: RunConfig) -> TaskGraph:
    return GraphBuilder(config).build()
