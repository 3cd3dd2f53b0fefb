"""
Scheduler tests against a fake execution substrate.
"""

import json
from pathlib import Path

import pytest
import yaml

from atacflow.graph import build_graph
from atacflow.scheduler import NodeStatus, Scheduler

S = NodeStatus


class TestHappyPath:
    def test_all_nodes_succeed(self, make_config, tas, fake_executor, tmp_path):
        graph = build_graph(make_config(tas=tas(2), enable_idr=True))
        executor = fake_executor()
        report = Scheduler(graph, executor, max_parallel=4).run()

        assert report.ok
        assert set(report.statuses.values()) == {S.SUCCEEDED}
        assert sorted(executor.ran) == sorted(graph.nodes)
        assert set(report.summaries) == {"overlap", "idr"}
        assert report.summaries["overlap"]["reproducibility_qc"].endswith(
            "reproducibility.overlap.reproducibility.qc"
        )

    def test_producers_run_before_consumers(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(nodup_bams=("a.bam", "b.bam")))
        executor = fake_executor()
        Scheduler(graph, executor, max_parallel=4).run()
        order = {nid: i for i, nid in enumerate(executor.ran)}
        for up, down in graph.edges:
            assert order[up] < order[down]

    def test_max_parallel_bound(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(3), cpu=3))
        executor = fake_executor(delay=0.01)
        report = Scheduler(graph, executor, max_parallel=2).run()
        assert report.ok
        assert executor.max_in_flight <= 2

    def test_queue_slots(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(3), cpu=3))
        executor = fake_executor(delay=0.01)
        report = Scheduler(graph, executor, max_parallel=4, queue_slots={"hard": 1}).run()
        assert report.ok
        assert executor.max_by_queue["hard"] == 1

    def test_status_snapshot(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        scheduler = Scheduler(graph, fake_executor())
        assert set(scheduler.status().values()) == {S.PENDING}
        scheduler.run()
        assert set(scheduler.status().values()) == {S.SUCCEEDED}

    def test_bad_max_parallel(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        with pytest.raises(ValueError, match="max_parallel"):
            Scheduler(graph, fake_executor(), max_parallel=0)


class TestFailure:
    """A failed node skips its dependents; other branches complete."""

    def test_prefix_failure_skips_dependents(self, make_config, fake_executor):
        graph = build_graph(make_config(nodup_bams=("a.bam", "b.bam")))
        executor = fake_executor(fail={"bam2ta/rep1"})
        report = Scheduler(graph, executor, max_parallel=3).run()

        assert not report.ok
        assert report.failed == ["bam2ta/rep1"]
        for nid in ("xcor/rep1", "spr/rep1", "peakcall/rep1", "pool/true", "peakcall/pooled",
                    "overlap/rep1-rep2", "overlap/ppr", "reproducibility/overlap"):
            assert report.statuses[nid] is S.SKIPPED, nid
            assert nid not in executor.ran
        for nid in ("bam2ta/rep2", "xcor/rep2", "peakcall/rep2", "bfilt/peakcall/rep2",
                    "overlap/pr/rep2", "bfilt/overlap/pr/rep2"):
            assert report.statuses[nid] is S.SUCCEEDED, nid
        assert set(report.skipped) == graph.descendants("bam2ta/rep1")
        assert "overlap" not in report.summaries

    def test_failure_diagnostics(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        report = Scheduler(graph, fake_executor(fail={"xcor/rep1"})).run()
        failure = report.failures["xcor/rep1"]
        assert failure["returncode"] == 1
        assert "boom in xcor/rep1" in failure["diagnostics"]
        # xcor is a leaf: nothing else is affected
        assert report.skipped == []
        assert report.statuses["reproducibility/overlap"] is S.SUCCEEDED

    def test_missing_output_fails_node(self, make_config, tas, fake_executor):
        def drop_output(task):
            if task.name == "spr/rep1":
                Path(task.outputs["ta_pr2"]).unlink()
            return None

        graph = build_graph(make_config(tas=tas(1), cpu=1))
        report = Scheduler(graph, fake_executor(on_run=drop_output)).run()
        assert report.failed == ["spr/rep1"]
        assert report.failures["spr/rep1"]["returncode"] is None
        assert "ta_pr2" in report.failures["spr/rep1"]["reason"]
        assert report.statuses["peakcall/pr1/rep1"] is S.SKIPPED
        assert report.statuses["peakcall/rep1"] is S.SUCCEEDED

    def test_failed_flag_written(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        Scheduler(graph, fake_executor(fail={"xcor/rep1"})).run()
        assert (graph["xcor/rep1"].task.workdir / ".failed").is_file()
        assert (graph["spr/rep1"].task.workdir / ".done").is_file()


class TestCancel:
    def test_cancel_mid_run(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        holder = {}

        def cancel_on_peakcall(task):
            if task.name == "peakcall/rep1":
                holder["scheduler"].cancel()
                return 143
            return None

        executor = fake_executor(on_run=cancel_on_peakcall)
        scheduler = Scheduler(graph, executor, max_parallel=1)
        holder["scheduler"] = scheduler
        report = scheduler.run()

        assert report.cancelled
        assert not report.ok
        assert report.failed == []
        assert executor.terminated
        assert report.statuses["xcor/rep1"] is S.SUCCEEDED
        assert report.statuses["spr/rep1"] is S.SUCCEEDED
        assert report.statuses["peakcall/rep1"] is S.CANCELLED
        assert executor.ran[-1] == "peakcall/rep1"
        # partial outputs of the cancelled node are discarded
        assert not Path(graph["peakcall/rep1"].outputs["npeak"]).exists()
        not_started = [nid for nid in graph.nodes if nid not in executor.ran]
        assert not_started
        assert all(report.statuses[nid] is S.CANCELLED for nid in not_started)


class TestResume:
    def test_done_nodes_are_reused(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        Scheduler(graph, fake_executor()).run()

        again = fake_executor(resume=True)
        report = Scheduler(graph, again).run()
        assert report.ok
        assert again.ran == []
        assert all(r.reused for r in report.results.values())

    def test_broken_outputs_rerun(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        Scheduler(graph, fake_executor()).run()
        Path(graph["xcor/rep1"].outputs["score"]).unlink()

        again = fake_executor(resume=True)
        report = Scheduler(graph, again).run()
        assert report.ok
        assert again.ran == ["xcor/rep1"]

    def test_without_resume_everything_reruns(self, make_config, tas, fake_executor):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        Scheduler(graph, fake_executor()).run()
        again = fake_executor()
        Scheduler(graph, again).run()
        assert sorted(again.ran) == sorted(graph.nodes)


class TestReport:
    def test_save_yaml(self, make_config, fake_executor, tmp_path):
        graph = build_graph(make_config(nodup_bams=("a.bam", "b.bam")))
        report = Scheduler(graph, fake_executor(fail={"peakcall/pooled"})).run()
        path = report.save(tmp_path / "report.yaml")
        data = yaml.safe_load(path.read_text())
        assert data["ok"] is False
        assert data["failed"] == ["peakcall/pooled"]
        assert data["status"]["peakcall/pooled"] == "failed"
        assert data["status"]["overlap/rep1-rep2"] == "skipped"
        assert data["failures"]["peakcall/pooled"]["returncode"] == 1
        assert "bam2ta/rep1" in data["outputs"]

    def test_node_log(self, make_config, tas, fake_executor, tmp_path):
        graph = build_graph(make_config(tas=tas(1), cpu=1))
        log_path = tmp_path / "logs" / "nodes.jsonl"
        Scheduler(graph, fake_executor(fail={"xcor/rep1"}), log_path=log_path).run()
        records = [json.loads(line) for line in log_path.read_text().splitlines()]
        assert len(records) == len(graph)
        by_id = {r["task_id"]: r for r in records}
        assert by_id["xcor/rep1"]["error"]
        assert by_id["spr/rep1"]["error"] is None
