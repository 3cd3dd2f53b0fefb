"""
Workflow facade: dry-run plan, scheduled run with report, CLI.
"""

import _thread
import json
import time

import pytest
import yaml

from atacflow.workflow import Workflow, main


@pytest.fixture
def config_file(tmp_path):
    raw = {
        "SETTING": {"User": "atac", "executor": "bash", "max_parallel": 2,
                    "queue_slots": {"hard": 1}},
        "WORK_PARAMETERS": {"work_dir_path": str(tmp_path / "out"), "title": "sampleA"},
        "INPUTS": {"tas": ["/data/rep1.tagAlign.gz", "/data/rep2.tagAlign.gz"]},
        "GENOME": {"chrsz": "/ref/hg38.chrom.sizes", "gensz": "hs"},
        "PIPELINE": {"cpu": 2, "enable_idr": True},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(raw))
    return path


class TestWorkflow:
    def test_requires_config(self):
        with pytest.raises(ValueError, match="config_path or config"):
            Workflow()

    def test_dry_run_writes_plan(self, config_file, tmp_path, capsys):
        wf = Workflow(config_path=config_file)
        assert wf.run(run=False) is None
        plan = json.loads((tmp_path / "out" / "workflow_sampleA.json").read_text())
        assert plan["title"] == "sampleA"
        assert plan["entry_type"] == "fragments"
        assert "reproducibility/idr" in plan["nodes"]
        assert "Dry-run" in capsys.readouterr().out
        assert not (tmp_path / "out" / "report.yaml").exists()

    def test_run_with_injected_executor(self, config_file, tmp_path, fake_executor):
        executor = fake_executor()
        wf = Workflow(config_path=config_file, executor=executor)
        report = wf.run(run=True)
        assert report.ok
        assert sorted(executor.ran) == sorted(wf.graph.nodes)
        assert executor.max_by_queue["hard"] == 1

        data = yaml.safe_load((tmp_path / "out" / "report.yaml").read_text())
        assert data["ok"] is True
        assert set(data["summaries"]) == {"overlap", "idr"}
        lines = (tmp_path / "out" / "logs" / "nodes.jsonl").read_text().splitlines()
        assert len(lines) == len(wf.graph)

    def test_dry_run_marks_completed_nodes_on_resume(self, config_file, fake_executor, capsys):
        Workflow(config_path=config_file, executor=fake_executor()).run(run=True)
        raw = yaml.safe_load(config_file.read_text())
        raw["SETTING"]["resume"] = True
        config_file.write_text(yaml.safe_dump(raw))
        capsys.readouterr()

        Workflow(config_path=config_file).run(run=False)
        out = capsys.readouterr().out
        assert "peakcall/rep1 [" in out
        assert "(done)" in out

    def test_ctrl_c_saves_cancelled_report(self, config_file, tmp_path, fake_executor):
        raw = yaml.safe_load(config_file.read_text())
        raw["SETTING"]["max_parallel"] = 1
        config_file.write_text(yaml.safe_dump(raw))

        def interrupt_on_xcor(task):
            if task.name == "xcor/rep1":
                _thread.interrupt_main()
                time.sleep(2)
                return 143
            return None

        wf = Workflow(config_path=config_file, executor=fake_executor(on_run=interrupt_on_xcor))
        report = wf.run(run=True)
        assert report.cancelled
        assert not report.ok
        data = yaml.safe_load((tmp_path / "out" / "report.yaml").read_text())
        assert data["cancelled"] is True
        assert set(data["status"].values()) == {"cancelled"}
        assert not (wf.graph["xcor/rep1"].task.workdir / ".done").exists()

    def test_run_failure_reported(self, config_file, tmp_path, fake_executor):
        wf = Workflow(config_path=config_file, executor=fake_executor(fail={"peakcall/rep2"}))
        report = wf.run(run=True)
        assert not report.ok
        assert "peakcall/rep2" in report.failed
        data = yaml.safe_load((tmp_path / "out" / "report.yaml").read_text())
        assert data["status"]["overlap/rep1-rep2"] == "skipped"


class TestCli:
    def test_main_dry_run(self, config_file, tmp_path):
        assert main(["--config", str(config_file)]) == 0
        assert (tmp_path / "out" / "workflow_sampleA.json").is_file()

    def test_main_requires_config(self):
        with pytest.raises(SystemExit):
            main([])
