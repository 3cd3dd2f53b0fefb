"""
Graph execution.

A single coordinating loop (the caller's thread) owns every status
transition. Worker threads only block on the executor and on output
validation, then hand a `NodeResult` (or an exception) back through their
future.
"""

from __future__ import annotations
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import pyaml

from atacflow.errors import TaskFailure
from atacflow.executor import Executor
from atacflow.graph import TaskGraph, TaskNode
from atacflow.utils.log import TAG, Logger

# seconds the coordinating loop blocks per wait()
POLL_SEC = 0.5


class NodeStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class NodeResult:
    node_id: str
    status: NodeStatus
    returncode: Optional[int] = None
    diagnostics: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    reused: bool = False
    duration_sec: float = 0.0
    reason: str = ""


@dataclass
class RunReport:
    results: Dict[str, NodeResult]
    summaries: Dict[str, Dict[str, str]] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return bool(self.results) and all(r.status is NodeStatus.SUCCEEDED for r in self.results.values())

    @property
    def statuses(self) -> Dict[str, NodeStatus]:
        return {nid: r.status for nid, r in self.results.items()}

    def _with(self, status: NodeStatus) -> List[str]:
        return [nid for nid, r in self.results.items() if r.status is status]

    @property
    def failed(self) -> List[str]:
        return self._with(NodeStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._with(NodeStatus.SKIPPED)

    @property
    def cancelled_nodes(self) -> List[str]:
        return self._with(NodeStatus.CANCELLED)

    @property
    def failures(self) -> Dict[str, Dict[str, Any]]:
        return {
            nid: {"returncode": r.returncode, "reason": r.reason, "diagnostics": r.diagnostics}
            for nid, r in self.results.items() if r.status is NodeStatus.FAILED
        }

    @property
    def outputs(self) -> Dict[str, Dict[str, str]]:
        return {nid: dict(r.outputs) for nid, r in self.results.items() if r.status is NodeStatus.SUCCEEDED}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "cancelled": self.cancelled,
            "status": {nid: s.value for nid, s in self.statuses.items()},
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": self.failures,
            "summaries": self.summaries,
            "outputs": self.outputs,
        }

    def save(self, path: str | Path) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(pyaml.dump(self.to_dict()))
        return p


class Scheduler:
    """
    Run a TaskGraph with at most `max_parallel` nodes in flight and optional
    per-queue caps (`queue_slots={"hard": 2, "short": 4}`).
    A failed node skips its transitive dependents; other branches go on.
    """

    def __init__(
        self,
        graph: TaskGraph,
        executor: Executor,
        max_parallel: int = 4,
        queue_slots: Optional[Dict[str, int]] = None,
        log_path: Optional[str | Path] = None,
    ):
        if max_parallel <= 0:
            raise ValueError(f"max_parallel must be positive, got {max_parallel}")
        self.graph = graph
        self.executor = executor
        self.max_parallel = max_parallel
        self.queue_slots = dict(queue_slots or {})
        self.log_path = Path(log_path) if log_path else None
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._results: Dict[str, NodeResult] = {}
        self._status: Dict[str, NodeStatus] = {}
        self._reset()

    def _reset(self) -> None:
        with self._lock:
            self._status = {nid: NodeStatus.PENDING for nid in self.graph.nodes}
            self._results = {}
        self._cancel.clear()

    # ---- status table
    def status(self) -> Dict[str, NodeStatus]:
        with self._lock:
            return dict(self._status)

    def _set(self, node_id: str, result: NodeResult) -> None:
        with self._lock:
            self._status[node_id] = result.status
            self._results[node_id] = result

    def _mark_running(self, node_id: str) -> None:
        with self._lock:
            self._status[node_id] = NodeStatus.RUNNING

    # ---- cancellation
    def cancel(self) -> None:
        """Stop launching nodes and terminate the running ones."""
        self._cancel.set()
        self.executor.terminate_all()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- worker side
    def _execute(self, node: TaskNode) -> NodeResult:
        started = time.monotonic()
        res = self.executor.run(node.task)
        if res.returncode != 0:
            raise TaskFailure(
                f"[{node.node_id}] exited with status {res.returncode}",
                node_id=node.node_id,
                returncode=res.returncode,
                diagnostics=res.stderr_tail(),
            )
        outputs = node.task.collect_outputs()
        return NodeResult(
            node_id=node.node_id,
            status=NodeStatus.SUCCEEDED,
            returncode=0,
            outputs=outputs,
            reused=res.reused,
            duration_sec=time.monotonic() - started,
        )

    def _run_node(self, node: TaskNode) -> NodeResult:
        runner = Logger(self._execute, task_id=node.node_id, log_path=self.log_path)
        return runner(node)

    # ---- coordinating loop
    def _eligible(self) -> List[TaskNode]:
        with self._lock:
            status = dict(self._status)
        return [
            n for n in self.graph
            if status[n.node_id] is NodeStatus.PENDING
            and all(status[u] is NodeStatus.SUCCEEDED for u in n.upstream)
        ]

    def _has_slot(self, queue: str, in_flight: Dict[str, int]) -> bool:
        cap = self.queue_slots.get(queue)
        return cap is None or in_flight.get(queue, 0) < cap

    def _skip_dependents(self, node_id: str) -> None:
        for nid in self.graph.descendants(node_id):
            with self._lock:
                pending = self._status[nid] is NodeStatus.PENDING
            if pending:
                self._set(nid, NodeResult(nid, NodeStatus.SKIPPED, reason=f"upstream {node_id} did not succeed"))

    def _finish(self, node: TaskNode, fut: Future) -> None:
        nid = node.node_id
        try:
            self._set(nid, fut.result())
            return
        except TaskFailure as e:
            rc, diag, reason = e.returncode, e.diagnostics, str(e)
        except Exception as e:  # executor/substrate error; recorded as this node's failure
            rc, diag, reason = None, "", f"{type(e).__name__}: {e}"

        if self.cancelled:
            node.task.discard_outputs()
            self._set(nid, NodeResult(nid, NodeStatus.CANCELLED, returncode=rc, reason="cancelled"))
            return
        print(f"{TAG} {nid} FAILED: {reason}", flush=True)
        self._set(nid, NodeResult(nid, NodeStatus.FAILED, returncode=rc, diagnostics=diag, reason=reason))
        self._skip_dependents(nid)

    def run(self) -> RunReport:
        self._reset()
        in_flight: Dict[Future, TaskNode] = {}
        per_queue: Dict[str, int] = {}

        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="atacflow") as pool:
            while True:
                if not self.cancelled:
                    for node in self._eligible():
                        if len(in_flight) >= self.max_parallel:
                            break
                        if not self._has_slot(node.queue, per_queue):
                            continue
                        self._mark_running(node.node_id)
                        per_queue[node.queue] = per_queue.get(node.queue, 0) + 1
                        in_flight[pool.submit(self._run_node, node)] = node
                if not in_flight:
                    break
                try:
                    # bounded wait so Ctrl-C reaches this loop, not pool shutdown
                    done, _ = wait(list(in_flight), timeout=POLL_SEC, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    print(f"{TAG} interrupted: cancelling {len(in_flight)} running node(s)", flush=True)
                    self.cancel()
                    continue
                for fut in done:
                    node = in_flight.pop(fut)
                    per_queue[node.queue] -= 1
                    self._finish(node, fut)

        for nid, status in self.status().items():
            if status is NodeStatus.PENDING:
                # only reachable after cancel(): nothing else leaves nodes unlaunched
                self._set(nid, NodeResult(nid, NodeStatus.CANCELLED, reason="not started"))

        with self._lock:
            results = {nid: self._results[nid] for nid in self.graph.nodes}
        summaries = {
            method: dict(results[nid].outputs)
            for method, nid in self.graph.summaries.items()
            if results[nid].status is NodeStatus.SUCCEEDED
        }
        return RunReport(results=results, summaries=summaries, cancelled=self.cancelled)
