# atacflow/utils/sh_writer.py
from __future__ import annotations
from pathlib import Path
from typing import Iterable, Optional, Sequence
import shlex, datetime


def _line(x) -> str:
    # argv list -> quoted line, plain string -> as is
    return shlex.join([str(t) for t in x]) if isinstance(x, (list, tuple)) else str(x)


def write_script_from_cmds(cmds: Iterable[Sequence[str] | str],
                           out_path: str | Path,
                           set_x: bool = False,
                           cwd: Optional[str | Path] = None,
                           exit_marker: Optional[str | Path] = None) -> Path:
    """
    Write a strict-mode bash script. `cwd` is entered first; `exit_marker`
    receives the script's exit status on any exit (used by batch substrates
    that do not report it).
    """
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    header = [
        "#!/usr/bin/env bash",
        "set -euo pipefail",
        "trap 'echo \"[ERR] $(date +%F-%T) $0:$LINENO\" >&2' ERR",
        f"# generated: {datetime.datetime.now().isoformat(timespec='seconds')}",
    ]
    if exit_marker is not None:
        header.append(f"exit_marker={shlex.quote(str(exit_marker))}")
        header.append("trap 'echo $? > \"$exit_marker\"' EXIT")
    if set_x:
        header.append("set -x")
    if cwd is not None:
        header.append(f"cd {shlex.quote(str(cwd))}")
    body = [_line(c) for c in cmds]
    out.write_text("\n".join([*header, *body, ""]))
    out.chmod(0o755)
    return out
