"""
Run configuration.

YAML sections (same layout as the other Wave-style workflow configs):

  SETTING          : User, executor (bash|sge), max_parallel, resume,
                     queues {hard, short}, queue_slots {hard, short}
  WORK_PARAMETERS  : work_dir_path, title
  INPUTS           : fastqs, bams, nodup_bams, tas (one entry per replicate)
  GENOME           : bowtie2_idx_prefix, chrsz, gensz, blacklist, ...
  PIPELINE         : paired_end, cpu, true_rep_only, enable_idr, peak/IDR thresholds
  TASK_PARAMS      : {<task kind>: {param: value}} overrides of task DEFAULTS
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from atacflow.errors import ConfigError

EXECUTORS = ("bash", "sge")


def _render_value(val: Any, ctx: Dict[str, Any]) -> Any:
    """Fill `{work_dir_path}` / `{title}` style placeholders in config strings."""
    if isinstance(val, str):
        return re.sub(r"\{([a-zA-Z0-9_]+)\}", lambda m: str(ctx.get(m.group(1), m.group(0))), val)
    if isinstance(val, list):
        return [_render_value(v, ctx) for v in val]
    if isinstance(val, dict):
        return {k: _render_value(v, ctx) for k, v in val.items()}
    return val


def _freeze(val: Any) -> Any:
    if isinstance(val, dict):
        return MappingProxyType({k: _freeze(v) for k, v in val.items()})
    if isinstance(val, list):
        return tuple(_freeze(v) for v in val)
    return val


@dataclass(frozen=True)
class GenomeConfig:
    """Reference genome key-value map."""

    chrsz: str = ""
    gensz: str = ""
    bowtie2_idx_prefix: Optional[str] = None
    blacklist: Optional[str] = None
    regex_bfilt_peak_chr_name: str = "chr[\\dXY]+"
    mito_chr_name: str = "chrM"

    def __post_init__(self):
        if not self.chrsz:
            raise ConfigError("GENOME.chrsz (chromosome sizes file) is required")
        if not self.gensz:
            raise ConfigError("GENOME.gensz (genome size token, e.g. hs/mm) is required")


@dataclass(frozen=True)
class QueueConfig:
    """
    Two logical queues. `hard` takes the long multi-threaded stages, `short`
    everything else. Names are passed to the execution substrate (SGE -q);
    slots cap how many nodes of each queue run at once.
    """

    hard: Optional[str] = None
    short: Optional[str] = None
    hard_slots: Optional[int] = None
    short_slots: Optional[int] = None

    def __post_init__(self):
        for key in ("hard_slots", "short_slots"):
            v = getattr(self, key)
            if v is not None and int(v) <= 0:
                raise ConfigError(f"queue_slots.{key.split('_')[0]} must be positive, got {v}")

    def name_for(self, queue: str) -> Optional[str]:
        return self.hard if queue == "hard" else self.short

    def slots(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        if self.hard_slots is not None:
            out["hard"] = int(self.hard_slots)
        if self.short_slots is not None:
            out["short"] = int(self.short_slots)
        return out


def _normalize_fastqs(raw: Any, paired_end: bool) -> Tuple[Tuple[Tuple[str, ...], ...], ...]:
    """
    fastqs: one entry per replicate, each a list of FASTQ pairs ([R1, R2])
    for paired-end, or of single FASTQ paths for single-ended data.
    """
    reps = []
    for r, rep in enumerate(raw or [], 1):
        items = []
        for item in rep or []:
            group = (str(item),) if isinstance(item, str) else tuple(str(x) for x in item)
            want = 2 if paired_end else 1
            if len(group) != want:
                raise ConfigError(
                    f"INPUTS.fastqs rep{r}: expected {want} file(s) per read group "
                    f"({'paired' if paired_end else 'single'}-end), got {list(group)}"
                )
            items.append(group)
        reps.append(tuple(items))
    return tuple(reps)


def _normalize_files(raw: Any, key: str) -> Tuple[str, ...]:
    out = []
    for r, item in enumerate(raw or [], 1):
        if isinstance(item, (list, tuple)):
            raise ConfigError(f"INPUTS.{key} rep{r}: expected one file per replicate, got a list")
        out.append(str(item) if item else "")
    return tuple(out)


@dataclass(frozen=True)
class RunConfig:
    work_dir: Path
    genome: GenomeConfig
    title: str = "atac"

    # replicate-indexed inputs; exactly one collection is expected to be filled
    fastqs: Tuple[Tuple[Tuple[str, ...], ...], ...] = ()
    bams: Tuple[str, ...] = ()
    nodup_bams: Tuple[str, ...] = ()
    tas: Tuple[str, ...] = ()

    paired_end: bool = True
    cpu: int = 1
    true_rep_only: bool = False
    enable_idr: bool = False
    cap_num_peak: int = 300000
    pval_thresh: float = 0.01
    smooth_win: int = 150
    idr_thresh: float = 0.05
    enable_signal_track: bool = False

    executor: str = "bash"
    max_parallel: int = 4
    resume: bool = False
    user: Optional[str] = None
    queues: QueueConfig = field(default_factory=QueueConfig)
    task_params: Mapping[str, Mapping[str, Any]] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        if self.cpu <= 0:
            raise ConfigError(f"cpu must be positive, got {self.cpu}")
        if self.max_parallel <= 0:
            raise ConfigError(f"max_parallel must be positive, got {self.max_parallel}")
        if self.executor not in EXECUTORS:
            raise ConfigError(f"executor must be one of {EXECUTORS}, got {self.executor!r}")
        if not 0.0 < self.pval_thresh <= 1.0:
            raise ConfigError(f"pval_thresh must be in (0, 1], got {self.pval_thresh}")
        if not 0.0 < self.idr_thresh <= 1.0:
            raise ConfigError(f"idr_thresh must be in (0, 1], got {self.idr_thresh}")
        if self.cap_num_peak <= 0:
            raise ConfigError(f"cap_num_peak must be positive, got {self.cap_num_peak}")
        if self.smooth_win <= 0:
            raise ConfigError(f"smooth_win must be positive, got {self.smooth_win}")

    def params_for(self, kind: str) -> Dict[str, Any]:
        return dict(self.task_params.get(kind, {}) or {})

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "RunConfig":
        if not isinstance(cfg, dict):
            raise ConfigError("configuration must be a mapping")
        setting = cfg.get("SETTING", {}) or {}
        w_params = cfg.get("WORK_PARAMETERS", {}) or {}
        if not w_params.get("work_dir_path"):
            raise ConfigError("WORK_PARAMETERS.work_dir_path is required")
        ctx = {k: v for k, v in w_params.items() if isinstance(v, str)}
        cfg = _render_value(cfg, ctx)
        w_params = cfg.get("WORK_PARAMETERS", {}) or {}
        inputs = cfg.get("INPUTS", {}) or {}
        pipeline = cfg.get("PIPELINE", {}) or {}
        queues = setting.get("queues", {}) or {}
        slots = setting.get("queue_slots", {}) or {}

        try:
            genome = GenomeConfig(**(cfg.get("GENOME", {}) or {}))
        except TypeError as e:
            raise ConfigError(f"GENOME: {e}") from e

        paired_end = bool(pipeline.get("paired_end", True))
        known = {
            "cpu": int, "true_rep_only": bool, "enable_idr": bool, "cap_num_peak": int,
            "pval_thresh": float, "smooth_win": int, "idr_thresh": float, "enable_signal_track": bool,
        }
        unknown = set(pipeline) - set(known) - {"paired_end"}
        if unknown:
            raise ConfigError(f"PIPELINE: unknown key(s) {sorted(unknown)}")
        try:
            flags = {k: conv(pipeline[k]) for k, conv in known.items() if k in pipeline}
        except (TypeError, ValueError) as e:
            raise ConfigError(f"PIPELINE: {e}") from e

        return cls(
            work_dir=Path(w_params["work_dir_path"]).resolve(),
            title=str(w_params.get("title", "atac")),
            genome=genome,
            fastqs=_normalize_fastqs(inputs.get("fastqs"), paired_end),
            bams=_normalize_files(inputs.get("bams"), "bams"),
            nodup_bams=_normalize_files(inputs.get("nodup_bams"), "nodup_bams"),
            tas=_normalize_files(inputs.get("tas"), "tas"),
            paired_end=paired_end,
            executor=str(setting.get("executor", "bash")).lower(),
            max_parallel=int(setting.get("max_parallel", 4)),
            resume=bool(setting.get("resume", False)),
            user=setting.get("User"),
            queues=QueueConfig(
                hard=queues.get("hard"),
                short=queues.get("short"),
                hard_slots=slots.get("hard"),
                short_slots=slots.get("short"),
            ),
            task_params=_freeze(cfg.get("TASK_PARAMS", {}) or {}),
            **flags,
        )


def load_config(config_path: str | Path) -> RunConfig:
    """Read a YAML run configuration."""
    path = Path(config_path)
    try:
        raw = yaml.safe_load(path.read_text())
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e
    return RunConfig.from_dict(raw or {})
