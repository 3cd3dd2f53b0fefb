"""
Unit tests for graph construction.

Graph shape depends only on entry type, replicate count, true_rep_only and
enable_idr; nothing is executed here.
"""

import pytest

from atacflow.entry import EntryType
from atacflow.errors import ConfigError, GraphBuildError
from atacflow.config import GenomeConfig
from atacflow.graph import GraphBuilder, OutputRef, build_graph


def _ids(graph, prefix):
    return graph.node_ids(prefix)


class TestSingleReplicate:
    """N=1: no pooling, no pairwise comparisons, no pooled pseudo-replicates."""

    def test_fragments_overlap_only(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        assert list(graph.nodes) == [
            "xcor/rep1",
            "spr/rep1",
            "peakcall/rep1",
            "bfilt/peakcall/rep1",
            "peakcall/pr1/rep1",
            "bfilt/peakcall/pr1/rep1",
            "peakcall/pr2/rep1",
            "bfilt/peakcall/pr2/rep1",
            "overlap/pr/rep1",
            "bfilt/overlap/pr/rep1",
            "reproducibility/overlap",
        ]

    def test_no_pool_or_pairwise_nodes(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(1), cpu=1, enable_idr=True))
        assert _ids(graph, "pool/") == []
        assert "peakcall/pooled" not in graph
        assert "peakcall/ppr1" not in graph
        assert "overlap/ppr" not in graph
        assert [nid for nid in graph.nodes if "-rep" in nid] == []

    def test_idr_single_replicate(self, make_config, tas):
        """Exactly one IDR node (pr1 vs pr2) and one IDR aggregator."""
        graph = build_graph(make_config(tas=tas(1), cpu=1, enable_idr=True))
        assert _ids(graph, "idr/") == ["idr/pr/rep1"]
        assert [n.node_id for n in graph.of_kind("reproducibility.qc")] == [
            "reproducibility/overlap",
            "reproducibility/idr",
        ]
        assert dict(graph.summaries) == {"overlap": "reproducibility/overlap", "idr": "reproducibility/idr"}

    def test_pr_comparison_anchored_on_own_peaks(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        node = graph["overlap/pr/rep1"]
        assert set(node.upstream) == {"peakcall/pr1/rep1", "peakcall/pr2/rep1", "peakcall/rep1"}
        assert node.task.inputs["peak_pooled"] == graph["peakcall/rep1"].outputs["npeak"]


class TestTrueReplicatesOnly:
    """true_rep_only drops pseudo-replicates and the aggregators."""

    def test_no_pseudo_replicates(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(2), true_rep_only=True))
        assert graph.of_kind("spr") == []
        assert _ids(graph, "peakcall/pr") == []
        assert "pool/pr1" not in graph
        assert _ids(graph, "reproducibility/") == []
        assert dict(graph.summaries) == {}

    def test_pairwise_and_pool_kept(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(2), true_rep_only=True, enable_idr=True))
        assert "pool/true" in graph
        assert "peakcall/pooled" in graph
        assert _ids(graph, "overlap/") == ["overlap/rep1-rep2"]
        assert _ids(graph, "idr/") == ["idr/rep1-rep2"]


class TestMultiReplicate:
    """N>1 with pseudo-replicates."""

    def test_four_replicates_six_pairs(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(4), cpu=4))
        pairwise = [nid for nid in _ids(graph, "overlap/rep")]
        assert pairwise == [
            "overlap/rep1-rep2", "overlap/rep1-rep3", "overlap/rep1-rep4",
            "overlap/rep2-rep3", "overlap/rep2-rep4", "overlap/rep3-rep4",
        ]
        assert len(graph.of_kind("overlap.naive")) == 6 + 4 + 1

    def test_pooled_pseudo_replicates(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(2)))
        assert set(graph["pool/pr1"].upstream) == {"spr/rep1", "spr/rep2"}
        assert graph["peakcall/ppr1"].upstream == ("pool/pr1",)
        assert set(graph["overlap/ppr"].upstream) == {"peakcall/ppr1", "peakcall/ppr2", "peakcall/pooled"}

    def test_aggregator_fans_in_filtered_comparisons(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(2)))
        assert graph["reproducibility/overlap"].upstream == (
            "bfilt/overlap/rep1-rep2",
            "bfilt/overlap/pr/rep1",
            "bfilt/overlap/pr/rep2",
            "bfilt/overlap/ppr",
        )

    def test_every_peak_set_is_blacklist_filtered(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(2), enable_idr=True))
        peak_nodes = graph.of_kind("macs2.callpeak") + graph.of_kind("overlap.naive") + graph.of_kind("idr")
        for node in peak_nodes:
            assert f"bfilt/{node.node_id}" in graph

    def test_idr_mirrors_overlap(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(3), cpu=3, enable_idr=True))
        overlap = [nid.split("/", 1)[1] for nid in _ids(graph, "overlap/")]
        idr = [nid.split("/", 1)[1] for nid in _ids(graph, "idr/")]
        assert overlap == idr

    def test_deterministic(self, make_config, tas):
        cfg = make_config(tas=tas(3), cpu=3, enable_idr=True)
        g1, g2 = build_graph(cfg), build_graph(cfg)
        assert list(g1.nodes) == list(g2.nodes)
        assert g1.edges == g2.edges

    def test_topological_order(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(3), cpu=3, enable_idr=True))
        seen = set()
        for node in graph:
            assert set(node.upstream) <= seen
            seen.add(node.node_id)

    def test_failure_reach(self, make_config, tas):
        graph = build_graph(make_config(nodup_bams=("a.bam", "b.bam")))
        down = graph.descendants("bam2ta/rep1")
        assert {"peakcall/rep1", "pool/true", "overlap/rep1-rep2", "reproducibility/overlap"} <= down
        assert "peakcall/rep2" not in down


class TestPrefixChain:
    """Entry-dependent per-replicate chain."""

    def test_reads_paired_end(self, make_config):
        fastqs = (
            (("r1a_R1.fq.gz", "r1a_R2.fq.gz"), ("r1b_R1.fq.gz", "r1b_R2.fq.gz")),
            (("r2_R1.fq.gz", "r2_R2.fq.gz"),),
        )
        graph = build_graph(make_config(fastqs=fastqs, cpu=4))
        assert graph.entry.entry_type is EntryType.READS
        assert graph["merge/rep1"].upstream == ("trim/fq1/rep1", "trim/fq2/rep1")
        assert graph["merge/rep2"].upstream == ("trim/fq1/rep2",)
        assert graph["align/rep1"].upstream == ("merge/rep1",)
        assert graph["filter/rep1"].upstream == ("align/rep1",)
        assert graph["bam2ta/rep1"].upstream == ("filter/rep1",)
        for nid in ("trim/fq1/rep1", "merge/rep1", "align/rep1", "filter/rep1", "bam2ta/rep1"):
            assert graph[nid].threads == 2

    def test_reads_single_end(self, make_config):
        graph = build_graph(make_config(fastqs=((("r1.fq.gz",),),), paired_end=False, cpu=1))
        assert "trim_R2" not in graph["trim/fq1/rep1"].outputs
        assert "merged_R2" not in graph["merge/rep1"].outputs
        assert "fastq2" not in graph["align/rep1"].task.inputs

    def test_reads_without_index_fails(self, make_config):
        genome = GenomeConfig(chrsz="/ref/chrom.sizes", gensz="hs")
        with pytest.raises(ConfigError, match="bowtie2_idx_prefix"):
            build_graph(make_config(genome=genome, fastqs=((("a.fq.gz", "b.fq.gz"),),), cpu=1))

    def test_aligned_starts_at_filter(self, make_config):
        graph = build_graph(make_config(bams=("a.bam",), cpu=1))
        assert _ids(graph, "align/") == []
        assert graph["filter/rep1"].upstream == ()
        assert graph["filter/rep1"].task.inputs["bam"] == "a.bam"

    def test_deduplicated_starts_at_bam2ta(self, make_config):
        graph = build_graph(make_config(nodup_bams=("a.bam",), cpu=1))
        assert _ids(graph, "filter/") == []
        assert graph["bam2ta/rep1"].upstream == ()

    def test_fragments_used_directly(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        assert graph["xcor/rep1"].upstream == ()
        assert graph["xcor/rep1"].task.inputs["ta"] == "/data/rep1.tagAlign.gz"

    def test_queues(self, make_config):
        graph = build_graph(make_config(fastqs=((("a.fq.gz", "b.fq.gz"),),), cpu=1))
        for nid in ("trim/fq1/rep1", "align/rep1", "filter/rep1", "bam2ta/rep1", "peakcall/rep1"):
            assert graph[nid].queue == "hard"
        for nid in ("merge/rep1", "xcor/rep1", "spr/rep1", "overlap/pr/rep1", "reproducibility/overlap"):
            assert graph[nid].queue == "short"

    def test_peak_filter_gets_tagalign_for_frip(self, make_config):
        graph = build_graph(make_config(nodup_bams=("a.bam",), cpu=1))
        node = graph["bfilt/peakcall/rep1"]
        assert set(node.upstream) == {"peakcall/rep1", "bam2ta/rep1"}
        assert "frip_qc" in node.outputs

    def test_task_params_override(self, make_config, tas):
        cfg = make_config(tas=tas(1), cpu=1, task_params={"macs2.callpeak": {"cap_num_peak": 500}})
        graph = build_graph(cfg)
        assert graph["peakcall/rep1"].task.params["cap_num_peak"] == 500

    def test_threads_override_outside_prefix_chain(self, make_config, tas):
        cfg = make_config(tas=tas(1), cpu=1, task_params={"macs2.callpeak": {"threads": 3}})
        assert build_graph(cfg)["peakcall/rep1"].threads == 3

    def test_prefix_chain_threads_override_rejected(self, make_config):
        """Prefix-chain threads come from the cpu budget; an override is refused, not ignored."""
        cfg = make_config(nodup_bams=("a.bam", "b.bam"), cpu=4, task_params={"bam2ta": {"threads": 8}})
        with pytest.raises(ConfigError, match="TASK_PARAMS.bam2ta.threads"):
            build_graph(cfg)


class TestAddNode:
    """Reference checks at construction time."""

    def test_missing_upstream_node(self, make_config, tas):
        builder = GraphBuilder(make_config(tas=tas(1), cpu=1))
        builder.build()
        with pytest.raises(GraphBuildError, match="peakcall/ppr1"):
            builder.add_node(
                "overlap/ppr", "overlap.naive",
                {
                    "peak1": OutputRef("peakcall/ppr1", "npeak"),
                    "peak2": OutputRef("peakcall/ppr2", "npeak"),
                    "peak_pooled": OutputRef("peakcall/pooled", "npeak"),
                },
            )

    def test_missing_output_slot(self, make_config, tas):
        builder = GraphBuilder(make_config(tas=tas(1), cpu=1))
        builder.build()
        with pytest.raises(GraphBuildError, match="no output slot 'bigwig'"):
            builder.add_node("bfilt/extra", "blacklist.filter", {"peak": OutputRef("peakcall/rep1", "bigwig")})

    def test_duplicate_id(self, make_config, tas):
        builder = GraphBuilder(make_config(tas=tas(1), cpu=1))
        builder.build()
        with pytest.raises(GraphBuildError, match="duplicate node id"):
            builder.add_node("xcor/rep1", "xcor", {"ta": "/data/rep1.tagAlign.gz"})

    def test_task_validation_error(self, make_config):
        builder = GraphBuilder(make_config(tas=("a.ta.gz",), cpu=1))
        with pytest.raises(GraphBuildError, match="pool/true"):
            builder.add_node("pool/true", "pool.ta", {"tas": ["a.ta.gz"]})


class TestDescribe:
    def test_plan_dict(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(2)))
        plan = graph.describe()
        assert plan["entry_type"] == "fragments"
        assert plan["replicate_count"] == 2
        assert set(plan["nodes"]) == set(graph.nodes)
        assert ["pool/true", "peakcall/pooled"] in plan["edges"]
        assert plan["nodes"]["peakcall/rep1"]["queue"] == "hard"
        assert plan["nodes"]["peakcall/rep1"]["cmd"]

    def test_graph_is_read_only(self, make_config, tas):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        with pytest.raises(TypeError):
            graph.nodes["x"] = None
