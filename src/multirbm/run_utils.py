"""Run-level helpers: tee stdout to a log file, write metrics."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO, Union


class _Tee:
    def __init__(self, *streams: TextIO) -> None:
        self.streams = streams

    def write(self, data: str) -> int:
        for s in self.streams:
            s.write(data)
        return len(data)

    def flush(self) -> None:
        for s in self.streams:
            s.flush()


class RunLogger:
    """Context manager copying everything printed to stdout into `log_path`."""

    def __init__(self, log_path: Union[str, Path], mode: str = "a") -> None:
        self.log_path = Path(log_path)
        self.mode = mode
        self._file: Optional[TextIO] = None
        self._stdout: Optional[TextIO] = None

    def __enter__(self) -> "RunLogger":
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.log_path, self.mode, encoding="utf-8")
        self._stdout = sys.stdout
        sys.stdout = _Tee(self._stdout, self._file)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        sys.stdout = self._stdout
        if self._file is not None:
            self._file.close()
            self._file = None


def save_metrics(metrics: Dict[str, Any], path: Union[str, Path]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(metrics, f, indent=2)
