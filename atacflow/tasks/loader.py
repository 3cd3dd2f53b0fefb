# atacflow/tasks/loader.py
from __future__ import annotations
import importlib
import pkgutil
from typing import Type

from atacflow.tasks.task import Task
from atacflow.tasks.task_registry import TaskRegistry


class TaskLoadError(RuntimeError): ...


_LOADED = False


def autoload_tasks(package_root: str = "atacflow.tasks") -> None:
    """
    Import every `<tool>[/<func>]/main.py` under atacflow.tasks so that the
    @register_task decorators fill the registry. Private modules (`_func`,
    `__main__`) are skipped.
    """
    global _LOADED
    if _LOADED:
        return
    pkg = importlib.import_module(package_root)
    for m in pkgutil.walk_packages(pkg.__path__, pkg.__name__ + "."):
        if any(part.startswith("_") for part in m.name.split(".")):
            continue
        if m.name.rsplit(".", 1)[-1] != "main":
            continue
        try:
            importlib.import_module(m.name)
        except ImportError as e:
            raise TaskLoadError(f"Cannot import {m.name}: {e}") from e
    _LOADED = True


def load_task_class(kind: str) -> Type[Task]:
    autoload_tasks()
    try:
        cls = TaskRegistry.get(kind)
    except KeyError as e:
        raise TaskLoadError(str(e)) from e
    if not isinstance(cls, type) or not issubclass(cls, Task):
        raise TaskLoadError(f"{kind} is not a Task subclass")
    return cls
