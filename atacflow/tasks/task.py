from __future__ import annotations
import abc
import glob
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from atacflow.errors import TaskFailure
from atacflow.tasks.utils import to_sh_from_builder

GLOB_CHARS = set("*?[")

# Shared by every task kind; container settings are per-kind overridable.
COMMON_DEFAULTS: Dict[str, Any] = {
    "image": None,
    "binds": None,
    "singularity_bin": "singularity",
}


# ---- Base Task ----
class Task(abc.ABC):
    """
    Base class of every task adapter.

    One subclass per external tool invocation. Subclasses declare

      INPUTS    : {slot: {"type": "path"|"paths"|"str", "required": bool, "desc": ...}}
      OUTPUTS   : {slot: {"name": "{prefix}.xxx", "when": <param or input>, "desc": ...}}
      DEFAULTS  : scalar parameters and their defaults
      RESOURCES : {"threads", "mem_gb", "time_hr", "queue": "hard"|"short"}

    and implement `_build_cmd`, which returns shell lines (argv lists or strings).
    Output names are fixed per slot; a glob name must resolve to exactly one file.
    """

    TYPE: str = ""
    INPUTS: Dict[str, Any] = {}
    OUTPUTS: Dict[str, Any] = {}
    DEFAULTS: Dict[str, Any] = {}
    RESOURCES: Dict[str, Any] = {"threads": 1, "mem_gb": 4, "time_hr": 4, "queue": "short"}

    def __init__(
        self,
        name: str,
        workdir: str | Path,
        inputs: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        threads: Optional[int] = None,
        prefix: Optional[str] = None,
    ):
        self.name = name
        self.workdir = Path(workdir)
        self.inputs = dict(inputs or {})
        self.params = {**COMMON_DEFAULTS, **self.DEFAULTS, **(params or {})}
        self.prefix = prefix or name.replace("/", ".")
        self.threads = int(threads or self.params.get("threads") or self.RESOURCES.get("threads", 1))
        self._check_inputs()
        self.outputs = self.expected_outputs()

    def _check_inputs(self) -> None:
        for slot, spec in self.INPUTS.items():
            if spec.get("required") and not self.inputs.get(slot):
                raise ValueError(f"[{self.TYPE}] INPUT.{slot} is required")
        unknown = set(self.inputs) - set(self.INPUTS)
        if unknown:
            raise ValueError(f"[{self.TYPE}] unknown input slot(s): {sorted(unknown)}")

    # ---- resources / routing
    @property
    def queue(self) -> str:
        return str(self.RESOURCES.get("queue", "short"))

    def resources(self) -> Dict[str, Any]:
        res = dict(self.RESOURCES)
        for key in ("mem_gb", "time_hr"):
            if self.params.get(key) is not None:
                res[key] = self.params[key]
        res["threads"] = self.threads
        return res

    # ---- output contract
    def _slot_enabled(self, spec: Dict[str, Any]) -> bool:
        gate = spec.get("when")
        if not gate:
            return True
        return bool(self.params.get(gate) or self.inputs.get(gate))

    def expected_outputs(self) -> Dict[str, str]:
        outs: Dict[str, str] = {}
        for slot, spec in self.OUTPUTS.items():
            if not self._slot_enabled(spec):
                continue
            outs[slot] = str(self.workdir / spec["name"].format(prefix=self.prefix))
        return outs

    def collect_outputs(self) -> Dict[str, str]:
        """Check every declared output exists and is non-empty; return slot -> path."""
        found: Dict[str, str] = {}
        problems: List[str] = []
        for slot, path in self.outputs.items():
            if GLOB_CHARS & set(Path(path).name):
                matches = sorted(glob.glob(path))
                if len(matches) != 1:
                    kind = "missing" if not matches else f"ambiguous ({len(matches)} matches)"
                    problems.append(f"{slot}: {kind} for {path}")
                    continue
                path = matches[0]
            p = Path(path)
            if not p.is_file() or p.stat().st_size <= 0:
                problems.append(f"{slot}: missing or empty {path}")
                continue
            found[slot] = path
        if problems:
            raise TaskFailure(
                f"[{self.name}] declared output(s) not produced: " + "; ".join(problems),
                node_id=self.name,
            )
        return found

    def discard_outputs(self) -> None:
        for path in self.outputs.values():
            for p in glob.glob(path) if GLOB_CHARS & set(Path(path).name) else [path]:
                Path(p).unlink(missing_ok=True)

    # ---- command
    @abc.abstractmethod
    def _build_cmd(
        self,
        *,
        inputs: Dict[str, Any],
        outputs: Dict[str, Any],
        params: Dict[str, Any],
        threads: int,
        workdir: str,
        prefix: Optional[str] = None,
    ) -> List[Sequence[str] | str]:
        ...

    def to_sh(self) -> List[str]:
        return to_sh_from_builder(
            builder=self._build_cmd,
            inputs=self.inputs,
            outputs=self.outputs,
            params=self.params,
            threads=self.threads,
            workdir=str(self.workdir),
            prefix=self.prefix,
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"
