# atacflow/tasks/utils.py
from __future__ import annotations
from pathlib import Path
from typing import Any, Iterable, Sequence, Optional, List, Union, Callable, Dict
import shlex


def normalize_binds(binds: Any) -> Optional[List[str]]:
    """
    - None -> None
    - 'a,b' -> ['a','b']
    - ['a','b'] -> ['a','b']
    - anything else -> None
    """
    if binds is None:
        return None
    if isinstance(binds, str):
        vals = [x.strip() for x in binds.split(",") if x.strip()]
        return vals or None
    if isinstance(binds, (list, tuple)):
        return [str(x) for x in binds]
    return None


def singularity_exec_cmd(
        *,
        image: str,
        argv: Sequence[str],
        binds: Optional[Sequence[str]] = None,
        singularity_bin: str = "singularity",
    ) -> List[str]:
    """Token list for `singularity exec [-B ...] <image> argv...`."""
    cmd: List[str] = [singularity_bin, "exec"]
    for b in (binds or []):
        cmd += ["-B", str(b)]
    cmd.append(str(image))
    cmd += list(map(str, argv))
    return cmd


def wrap_argv(argv: Sequence[Any], params: Dict[str, Any]) -> str:
    """
    Quote one tool invocation into a shell string, wrapped in
    `singularity exec` when params carry an image.
    """
    argv = [str(a) for a in argv]
    image = params.get("image")
    if image:
        argv = singularity_exec_cmd(
            image=str(image),
            argv=argv,
            binds=normalize_binds(params.get("binds")),
            singularity_bin=str(params.get("singularity_bin", "singularity")),
        )
    return shlex.join(argv)


def join_argv_lines(lines: Iterable[Union[str, Sequence[Any]]]) -> List[str]:
    """Turn a mix of argv sequences and plain strings into shell lines."""
    out: List[str] = []
    for ln in lines:
        if isinstance(ln, (list, tuple)):
            out.append(shlex.join([str(t) for t in ln]))
        else:
            out.append(str(ln))
    return out


def to_sh_from_builder(
        *,
        builder: Callable[..., Iterable[Union[str, Sequence[str]]]],
        inputs: Dict[str, Any],
        outputs: Dict[str, Any],
        params: Dict[str, Any],
        threads: int,
        workdir: str,
        prefix: Optional[str] = None,
    ) -> List[str]:
    lines = builder(
        inputs=inputs,
        outputs=outputs,
        params=params,
        threads=threads,
        workdir=workdir,
        prefix=prefix,
    )
    return join_argv_lines(lines)


def random_source(seed: Any) -> str:
    """
    Deterministic byte stream for `shuf --random-source=`; `seed` is inserted
    verbatim so it can be a literal or a `$(...)` expression.
    """
    return f"<(openssl enc -aes-256-ctr -pass pass:{seed} -nosalt </dev/zero 2>/dev/null)"
