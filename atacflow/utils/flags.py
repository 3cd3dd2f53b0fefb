# atacflow/utils/flags.py
from __future__ import annotations
import functools, json, time
from pathlib import Path
from typing import Any, Callable, Optional

from atacflow.errors import TaskFailure

# ------------------------------
# helpers
# ------------------------------
def _extract_task_from_args_kwargs(args, kwargs) -> Optional[Any]:
    if "task" in kwargs:
        return kwargs["task"]
    # (self, task) or (task,)
    for a in args:
        if hasattr(a, "outputs") and hasattr(a, "workdir"):
            return a
    return None


def outputs_ok(task) -> bool:
    """Declared outputs all present and non-empty (globs resolve to one file)."""
    try:
        task.collect_outputs()
    except TaskFailure:
        return False
    return True


def clear_flags(task, *names: str) -> None:
    workdir = Path(getattr(task, "workdir", "."))
    for name in names:
        (workdir / name).unlink(missing_ok=True)
        (workdir / f"{name}.json").unlink(missing_ok=True)


# ------------------------------
# before: skip when already done
# ------------------------------
def skip_if_done(
    flag_name: str = ".done",
    require_outputs_ok: bool = True,
    enabled_attr: Optional[str] = "resume",
    on_skip: Optional[Callable[[Any], Any]] = None,
):
    """
    Skip the call when <workdir>/<flag_name> exists and (with
    require_outputs_ok) every declared output is non-empty. A flag with broken
    outputs is treated as stale and the call runs again.

    enabled_attr: attribute on the bound instance (first positional arg) that
    switches the check on; the check is off when it is present and falsy.
    on_skip(task) builds the return value of a skipped call (default True).
    """
    def deco(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if enabled_attr and args and not getattr(args[0], enabled_attr, True):
                return func(*args, **kwargs)
            task = _extract_task_from_args_kwargs(args, kwargs)
            if task is None:
                return func(*args, **kwargs)

            done_flag = Path(getattr(task, "workdir", ".")) / flag_name
            if done_flag.exists() and (not require_outputs_ok or outputs_ok(task)):
                return on_skip(task) if on_skip else True
            return func(*args, **kwargs)
        return wrapper
    return deco


# ------------------------------
# after: write done / failed flag
# ------------------------------
def flag_on_complete(flag_name: str = ".done", fail_flag: str = ".failed", write_meta: bool = True):
    """
    Clear old flags, run, then write `flag_name` when the result has a zero
    `returncode` (if it carries one) and all outputs are valid, else `fail_flag`.
    """
    def deco(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            task = _extract_task_from_args_kwargs(args, kwargs)
            if task is not None:
                clear_flags(task, flag_name, fail_flag)

            result = func(*args, **kwargs)
            if task is None:
                return result

            workdir = Path(getattr(task, "workdir", "."))
            workdir.mkdir(parents=True, exist_ok=True)
            files = list(getattr(task, "outputs", {}).values())
            when = time.strftime("%Y-%m-%d %H:%M:%S")
            rc = getattr(result, "returncode", 0)

            if rc == 0 and outputs_ok(task):
                (workdir / flag_name).write_text("OK\n")
                if write_meta:
                    (workdir / f"{flag_name}.json").write_text(
                        json.dumps({"status": "OK", "timestamp": when, "outputs": files},
                                   indent=2, ensure_ascii=False)
                    )
            elif fail_flag:
                (workdir / fail_flag).write_text("FAILED\n")
                if write_meta:
                    missing = [p for p in files if not Path(p).is_file() or Path(p).stat().st_size <= 0]
                    (workdir / f"{fail_flag}.json").write_text(
                        json.dumps({"status": "FAILED", "timestamp": when, "returncode": rc,
                                    "missing_or_empty": missing},
                                   indent=2, ensure_ascii=False)
                    )
            return result
        return wrapper
    return deco


# ------------------------------
# direct check
# ------------------------------
def is_done(task, flag_name: str = ".done", require_outputs_ok: bool = True) -> bool:
    workdir = Path(getattr(task, "workdir", "."))
    if not (workdir / flag_name).exists():
        return False
    if not require_outputs_ok:
        return True
    return outputs_ok(task)
