import datetime
import json
import threading
import traceback
from functools import wraps
from pathlib import Path

TAG = "[ATAC]"


class Logger:
    """
    Call logger. Prints START / END / ERROR lines with the duration and keeps
    one structured entry per call; with `log_path` set, each entry is also
    appended to that JSON-lines file as soon as the call returns.
    """

    _file_lock = threading.Lock()

    def __init__(self, func=None, *, task_id=None, log_path=None, tag: str = TAG):
        self.func = func
        self.task_id = task_id
        self.log_path = Path(log_path) if log_path else None
        self.tag = tag
        self.logs = []
        if func is not None:
            wraps(func)(self)

    def __call__(self, *args, **kwargs):
        task_info = f" ▶ {self.task_id}" if self.task_id is not None else ""

        start_ts = self.timestamp()
        start_time = datetime.datetime.now()

        print(f"{self.tag}[{start_ts}]{task_info} ▶ {self.func.__name__} START", flush=True)
        try:
            result = self.func(*args, **kwargs)
            end_time = datetime.datetime.now()
            end_ts = end_time.strftime("%Y-%m-%d %H:%M:%S")
            duration = (end_time - start_time).total_seconds()
            print(f"{self.tag}[{end_ts}]{task_info} ▶ {self.func.__name__} END (Process Time : {duration:.4f}s)",
                  flush=True)
            self.save_log(start_ts, end_ts, duration, args, kwargs, result=result)
            return result
        except Exception as e:
            error_time = datetime.datetime.now()
            error_ts = error_time.strftime("%Y-%m-%d %H:%M:%S")
            duration = (error_time - start_time).total_seconds()

            print(f"{self.tag}[{error_ts}]{task_info} ▶ {self.func.__name__} ERROR "
                  f"(Process Time : {duration:.4f}s Log : {e})", flush=True)

            tb = traceback.format_exc()
            self.save_log(start_ts, error_ts, duration, args, kwargs, error=str(e), traceback=tb)
            raise  # the scheduler decides what a failure means

    def timestamp(self) -> str:
        return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def save_log(self, start_ts, end_ts, duration, args, kwargs, result=None, error=None, traceback=None):
        entry = {
            "task_id": self.task_id,
            "function": self.func.__name__ if self.func else None,
            "start_time": start_ts,
            "end_time": end_ts,
            "duration_sec": duration,
            "args": [repr(a) for a in args],
            "kwargs": {k: repr(v) for k, v in kwargs.items()},
            "result": repr(result) if result is not None else None,
            "error": error,
            "traceback": traceback,
        }
        self.logs.append(entry)
        if self.log_path is not None:
            self._append(self.log_path, [entry])

    @classmethod
    def _append(cls, path: Path, records, mode: str = "a"):
        path.parent.mkdir(parents=True, exist_ok=True)
        with cls._file_lock, open(path, mode, encoding="utf-8") as f:
            for rec in records:
                f.write(json.dumps(rec, ensure_ascii=False, default=str) + "\n")

