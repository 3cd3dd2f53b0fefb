"""
Execution substrates. An executor runs one task adapter's shell lines as a
script in the task's workdir and reports the exit status; it never decides
what a failure means for the rest of the graph.
"""

from __future__ import annotations
import os, signal, subprocess, threading, time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from atacflow.config import QueueConfig
from atacflow.tasks.task import Task
from atacflow.utils.flags import flag_on_complete, skip_if_done
from atacflow.utils.log import TAG
from atacflow.utils.sh_writer import write_script_from_cmds

EXIT_MARKER = ".exit_code"
# returncode of a node refused or killed by terminate_all()
CANCELLED_RC = 143


@dataclass
class ExecResult:
    node_id: str
    returncode: int
    stdout: Optional[Path] = None
    stderr: Optional[Path] = None
    reused: bool = False   # finished in an earlier run (.done flag)

    def stderr_tail(self, n: int = 20) -> str:
        if self.stderr is None or not self.stderr.is_file():
            return ""
        lines = self.stderr.read_text(errors="replace").splitlines()
        return "\n".join(lines[-n:])


def _reused(task: Task) -> ExecResult:
    return ExecResult(node_id=task.name, returncode=0, reused=True)


class Executor:
    """Base Executor: script + log layout, completion flags, resume."""

    def __init__(self, logdir: str | Path = "./logs", *, resume: bool = False,
                 queues: Optional[QueueConfig] = None, set_x: bool = False):
        self.logdir = Path(logdir)
        self.logdir.mkdir(parents=True, exist_ok=True)
        self.resume = resume
        self.queues = queues or QueueConfig()
        self.set_x = set_x
        self._cancelled = False

    def log_paths(self, task: Task):
        return (self.logdir / f"{task.prefix}.stdout", self.logdir / f"{task.prefix}.stderr")

    def make_script(self, task: Task, exit_marker: Optional[Path] = None) -> Path:
        task.workdir.mkdir(parents=True, exist_ok=True)
        return write_script_from_cmds(
            task.to_sh(),
            task.workdir / "run.sh",
            set_x=self.set_x,
            cwd=task.workdir,
            exit_marker=exit_marker,
        )

    @skip_if_done(flag_name=".done", require_outputs_ok=True, on_skip=_reused)
    @flag_on_complete(flag_name=".done", fail_flag=".failed")
    def run(self, task: Task) -> ExecResult:
        """Run one task to completion (blocking)."""
        stdout_path, stderr_path = self.log_paths(task)
        rc = self._submit(task, stdout_path, stderr_path)
        return ExecResult(node_id=task.name, returncode=rc, stdout=stdout_path, stderr=stderr_path)

    def _submit(self, task: Task, stdout_path: Path, stderr_path: Path) -> int:
        raise NotImplementedError

    def terminate(self, node_id: str) -> None:
        raise NotImplementedError

    def terminate_all(self) -> None:
        """Terminate running nodes; nodes submitted afterwards are refused."""
        raise NotImplementedError


# ---------------------------------------------------------------------
# 1. BashExecutor: local bash
# ---------------------------------------------------------------------
class BashExecutor(Executor):
    """Runs each script with local bash in its own process group."""

    def __init__(self, logdir: str | Path = "./logs", **kw):
        super().__init__(logdir, **kw)
        self._procs: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def _submit(self, task: Task, stdout_path: Path, stderr_path: Path) -> int:
        script_path = self.make_script(task)
        with open(stdout_path, "w") as out, open(stderr_path, "w") as err:
            # launch and register under the lock terminate_all() takes
            with self._lock:
                if self._cancelled:
                    err.write(f"[{task.name}] not started: executor cancelled\n")
                    return CANCELLED_RC
                process = subprocess.Popen(
                    ["bash", str(script_path)],
                    stdout=out, stderr=err, cwd=str(task.workdir), start_new_session=True,
                )
                self._procs[task.name] = process
            try:
                return process.wait()
            finally:
                with self._lock:
                    self._procs.pop(task.name, None)

    def terminate(self, node_id: str) -> None:
        with self._lock:
            process = self._procs.get(node_id)
        if process is None or process.poll() is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass

    def terminate_all(self) -> None:
        with self._lock:
            self._cancelled = True
            running = list(self._procs)
        for node_id in running:
            self.terminate(node_id)


# ---------------------------------------------------------------------
# 2. SunGridExecutor: SGE (qsub)
# ---------------------------------------------------------------------
class SunGridExecutor(Executor):
    """
    Submits each script with qsub and polls qstat until the job leaves the
    queue. The script writes its own exit status to `.exit_code` in the task
    workdir, since qstat does not report it.
    """

    def __init__(self, logdir: str | Path = "./logs", *, user: Optional[str] = None,
                 poll_sec: int = 15, name_prefix: Optional[str] = None, qstat_retries: int = 3, **kw):
        super().__init__(logdir, **kw)
        self.user = user or os.getenv("USER", "unknown")
        self.poll_sec = poll_sec
        self.qstat_retries = qstat_retries
        self.name_prefix = name_prefix
        self._jobs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def job_name(self, task: Task) -> str:
        # SGE job names may not start with a digit or contain '/'
        name = task.prefix if not self.name_prefix else f"{self.name_prefix}.{task.prefix}"
        return name if not name[:1].isdigit() else f"j{name}"

    def qsub_args(self, task: Task, script_path: Path, stdout_path: Path, stderr_path: Path) -> List[str]:
        res = task.resources()
        args = ["qsub", "-N", self.job_name(task)]
        queue_name = self.queues.name_for(task.queue)
        if queue_name:
            args += ["-q", queue_name]
        args += ["-o", str(stdout_path), "-e", str(stderr_path),
                 "-pe", "smp", str(int(res["threads"])), "-V", "-cwd"]
        if res.get("mem_gb") is not None:
            args += ["-l", f"h_vmem={int(res['mem_gb'])}G"]
        if res.get("time_hr") is not None:
            args += ["-l", f"h_rt={int(res['time_hr'])}:00:00"]
        args.append(str(script_path))
        return args

    def qsub_sh(self, task: Task, script_path: Path, stdout_path: Path, stderr_path: Path) -> str:
        out = subprocess.check_output(self.qsub_args(task, script_path, stdout_path, stderr_path), text=True)
        # "Your job 12345 ("name") has been submitted"
        jid = next((p for p in out.split() if p.isdigit()), None)
        if jid is None:
            raise RuntimeError(f"cannot parse qsub output: {out.strip()}")
        return jid

    def running_jobs(self) -> List[str]:
        proc = subprocess.run(["qstat", "-u", self.user], capture_output=True, text=True)
        if proc.returncode != 0:
            raise RuntimeError(f"qstat exited with status {proc.returncode}: {proc.stderr.strip()}")
        jobs = []
        for line in proc.stdout.splitlines():
            parts = line.strip().split()
            if not parts or parts[0].startswith(("job", "-")):
                continue
            jobs.append(parts[0])
        return jobs

    def _is_queued(self, jid: str) -> bool:
        # a failing qstat says nothing about the job; retry before giving up
        for attempt in range(self.qstat_retries + 1):
            try:
                return jid in self.running_jobs()
            except RuntimeError as e:
                if attempt == self.qstat_retries:
                    raise
                print(f"{TAG} {e}; retrying ({attempt + 1}/{self.qstat_retries})", flush=True)
                time.sleep(self.poll_sec)
        return False

    def _submit(self, task: Task, stdout_path: Path, stderr_path: Path) -> int:
        marker = task.workdir / EXIT_MARKER
        marker.unlink(missing_ok=True)
        script_path = self.make_script(task, exit_marker=marker)
        with self._lock:
            if self._cancelled:
                return CANCELLED_RC
        jid = self.qsub_sh(task, script_path, stdout_path, stderr_path)
        with self._lock:
            self._jobs[task.name] = jid
            cancelled = self._cancelled
        if cancelled:
            # terminate_all() ran while qsub was in flight
            self.terminate(task.name)
        try:
            while self._is_queued(jid):
                time.sleep(self.poll_sec)
        finally:
            with self._lock:
                self._jobs.pop(task.name, None)
        try:
            return int(marker.read_text().strip())
        except (FileNotFoundError, ValueError):
            # killed by the scheduler (h_rt/h_vmem) or qdel before the trap ran
            return 137

    def terminate(self, node_id: str) -> None:
        with self._lock:
            jid = self._jobs.get(node_id)
        if jid is not None:
            subprocess.run(["qdel", jid], capture_output=True)

    def terminate_all(self) -> None:
        with self._lock:
            self._cancelled = True
            running = list(self._jobs)
        for node_id in running:
            self.terminate(node_id)


def make_executor(kind: str, logdir: str | Path, **kw) -> Executor:
    if kind == "bash":
        kw.pop("user", None)
        return BashExecutor(logdir, **kw)
    if kind == "sge":
        return SunGridExecutor(logdir, **kw)
    raise ValueError(f"unknown executor: {kind}")
