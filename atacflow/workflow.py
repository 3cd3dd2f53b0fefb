# atacflow/workflow.py
from __future__ import annotations
import argparse, json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from atacflow.config import RunConfig, load_config
from atacflow.executor import Executor, make_executor
from atacflow.graph import GraphBuilder, TaskGraph
from atacflow.scheduler import RunReport, Scheduler
from atacflow.utils.flags import is_done
from atacflow.utils.log import TAG


@dataclass
class Workflow:
    """
    YAML config -> task graph -> (dry-run plan | scheduled run + report).

    Either `config_path` or `config` must be given.
    """

    config_path: Optional[Path] = None
    config: Optional[RunConfig] = None
    executor: Optional[Executor] = None

    graph: Optional[TaskGraph] = field(default=None, init=False)
    scheduler: Optional[Scheduler] = field(default=None, init=False)

    def __post_init__(self):
        if self.config is None:
            if self.config_path is None:
                raise ValueError("Workflow: either config_path or config must be provided.")
            self.config = load_config(self.config_path)
        self.work_dir = Path(self.config.work_dir)

    # --------------------------
    # paths
    # --------------------------
    @property
    def log_dir(self) -> Path:
        return self.work_dir / "logs"

    @property
    def plan_path(self) -> Path:
        return self.work_dir / f"workflow_{self.config.title}.json"

    @property
    def report_path(self) -> Path:
        return self.work_dir / "report.yaml"

    # --------------------------
    # build
    # --------------------------
    def build(self) -> TaskGraph:
        self.graph = GraphBuilder(self.config).build()
        self.work_dir.mkdir(parents=True, exist_ok=True)
        plan: Dict[str, Any] = {
            "title": self.config.title,
            "user": self.config.user,
            "executor": self.config.executor,
            **self.graph.describe(),
        }
        with open(self.plan_path, "w") as handle:
            json.dump(plan, handle, indent=4)
        return self.graph

    def _make_executor(self) -> Executor:
        if self.executor is not None:
            return self.executor
        cfg = self.config
        return make_executor(
            cfg.executor, self.log_dir, resume=cfg.resume, queues=cfg.queues, user=cfg.user,
        )

    # --------------------------
    # run
    # --------------------------
    def run(self, run: bool = False) -> Optional[RunReport]:
        graph = self.build()
        entry = graph.entry
        print(f"{TAG} entry={entry.entry_type} replicates={entry.replicate_count} nodes={len(graph)}")
        if not run:
            print(f"{TAG} Dry-run: plan written to {self.plan_path}")
            for node in graph:
                mark = " (done)" if self.config.resume and is_done(node.task) else ""
                print(f"  - {node.node_id} [{node.kind}, {node.queue}, {node.threads} thread(s)]{mark}")
            return None

        self.scheduler = Scheduler(
            graph,
            self._make_executor(),
            max_parallel=self.config.max_parallel,
            queue_slots=self.config.queues.slots(),
            log_path=self.log_dir / "nodes.jsonl",
        )
        try:
            report = self.scheduler.run()
        except KeyboardInterrupt:
            # interrupted outside the wait; the loop handles the common case itself
            self.scheduler.cancel()
            raise
        report.save(self.report_path)

        state = "OK" if report.ok else ("CANCELLED" if report.cancelled else "FAILED")
        print(f"{TAG} Run {state}: report written to {self.report_path}")
        for nid in report.failed:
            print(f"  - failed : {nid}")
        for nid in report.skipped:
            print(f"  - skipped: {nid}")
        for method, paths in report.summaries.items():
            print(f"  - {method}: {paths.get('reproducibility_qc')}")
        return report

    def cancel(self) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel()


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser("atacflow", description="ATAC-seq/DNase-seq pipeline runner")
    ap.add_argument("--config", required=True, help="YAML run configuration")
    ap.add_argument("--run", action="store_true", help="Execute (default: dry-run, write the plan only)")
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    wf = Workflow(config_path=Path(args.config))
    report = wf.run(run=args.run)
    return 0 if report is None or report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
