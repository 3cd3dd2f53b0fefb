"""
Shared fixtures: run configurations and a fake execution substrate that
materialises every declared output instead of calling the real tools.
"""

import threading
import time
from pathlib import Path

import pytest

from atacflow.config import GenomeConfig, RunConfig
from atacflow.executor import Executor


class FakeExecutor(Executor):
    """
    Writes one line into every declared output and exits 0, or exits 1 with
    a stderr message for nodes listed in `fail`. `on_run(task)` may return a
    return code to override the outcome.
    """

    def __init__(self, logdir, *, fail=(), on_run=None, delay=0.0, **kw):
        super().__init__(logdir, **kw)
        self.fail = set(fail)
        self.on_run = on_run
        self.delay = delay
        self.ran = []
        self.terminated = False
        self.in_flight = 0
        self.max_in_flight = 0
        self.in_flight_by_queue = {}
        self.max_by_queue = {}
        self._lock = threading.Lock()

    def _submit(self, task, stdout_path, stderr_path):
        with self._lock:
            self.ran.append(task.name)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            q = task.queue
            self.in_flight_by_queue[q] = self.in_flight_by_queue.get(q, 0) + 1
            self.max_by_queue[q] = max(self.max_by_queue.get(q, 0), self.in_flight_by_queue[q])
        try:
            if self.delay:
                time.sleep(self.delay)
            task.workdir.mkdir(parents=True, exist_ok=True)
            if task.name in self.fail:
                stderr_path.write_text(f"boom in {task.name}\n")
                return 1
            for path in task.outputs.values():
                Path(path).write_text("chr1\t100\t200\tPeak_1\t1000\n")
            if self.on_run is not None:
                rc = self.on_run(task)
                if rc is not None:
                    return rc
            return 0
        finally:
            with self._lock:
                self.in_flight -= 1
                self.in_flight_by_queue[task.queue] -= 1

    def terminate(self, node_id):
        pass

    def terminate_all(self):
        self.terminated = True


GENOME = dict(
    chrsz="/ref/hg38.chrom.sizes",
    gensz="hs",
    bowtie2_idx_prefix="/ref/bowtie2/hg38",
    blacklist="/ref/hg38.blacklist.bed.gz",
)


@pytest.fixture
def make_config(tmp_path):
    """Factory for RunConfig with a working genome and tmp work dir."""

    def _make(**kw):
        genome = kw.pop("genome", None) or GenomeConfig(**GENOME)
        base = dict(work_dir=tmp_path / "out", genome=genome, cpu=2)
        base.update(kw)
        return RunConfig(**base)

    return _make


@pytest.fixture
def tas():
    """tagAlign inputs for `n` replicates."""

    def _tas(n):
        return tuple(f"/data/rep{i + 1}.tagAlign.gz" for i in range(n))

    return _tas


@pytest.fixture
def fake_executor(tmp_path):
    def _make(**kw):
        return FakeExecutor(tmp_path / "logs", **kw)

    return _make
