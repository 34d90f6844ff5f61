from __future__ import annotations

import datetime as _dt
import io
import json
import logging
import math
import os
import platform
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import torch


# --------------------------------------------
# Environment knobs
# --------------------------------------------

_TRUE_VALUES = {"1", "true", "yes", "on", "y"}
LOG_LEVEL_ENV = "GEOTOMO_LOG_LEVEL"


def get_log_level(default: str = "info") -> str:
    """Normalized console log level from ``GEOTOMO_LOG_LEVEL``."""
    lvl = os.environ.get(LOG_LEVEL_ENV, default).strip().lower()
    if lvl not in {"debug", "info", "warning", "error", "critical"}:
        return default
    return lvl


def want_verbose_debug() -> bool:
    return get_log_level() == "debug"


def configure_console_logging(rank: int = 0, level: Optional[str] = None) -> None:
    """
    Attach a rank-tagged stream handler to the ``geotomo`` logger hierarchy.

    Safe to call more than once; the handler is installed only once.
    """
    root = logging.getLogger("geotomo")
    lvl = (level or get_log_level()).upper()
    root.setLevel(getattr(logging, lvl, logging.INFO))
    if any(getattr(h, "_geotomo_console", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(f"[rank {rank}] %(levelname)s %(name)s: %(message)s")
    )
    handler._geotomo_console = True  # type: ignore[attr-defined]
    root.addHandler(handler)


# --------------------------------------------
# JSON utilities (NaN/Inf safe + compact)
# --------------------------------------------


def _json_sanitize(v: Any) -> Any:
    """
    Convert values into JSON-safe primitives.

    - NaN / ±Inf floats become "NaN", "Infinity", "-Infinity".
    - Tensors with <= 1024 elements are emitted in full, larger ones as a
      shape/dtype/min/max/mean summary with NaN entries left out.
    - Containers are handled recursively; anything else is stringified.
    """
    if isinstance(v, float):
        if math.isfinite(v):
            return v
        if math.isnan(v):
            return "NaN"
        return "Infinity" if v > 0 else "-Infinity"

    if isinstance(v, torch.Tensor):
        t = v.detach().cpu()
        if t.numel() <= 1024:
            return _json_sanitize(t.tolist())
        tf = t.double().reshape(-1)
        vals = tf[~torch.isnan(tf)]
        has_vals = vals.numel() > 0
        return {
            "_type": "tensor_summary",
            "shape": list(t.shape),
            "dtype": str(t.dtype),
            "min": _json_sanitize(float(vals.min().item())) if has_vals else None,
            "max": _json_sanitize(float(vals.max().item())) if has_vals else None,
            "mean": _json_sanitize(float(vals.mean().item())) if has_vals else None,
            "nan_count": int(tf.numel() - vals.numel()),
        }

    if isinstance(v, dict):
        return {str(k): _json_sanitize(val) for k, val in v.items()}
    if isinstance(v, (list, tuple)):
        return [_json_sanitize(x) for x in v]
    if isinstance(v, (set, frozenset)):
        return sorted(str(_json_sanitize(x)) for x in v)

    try:
        json.dumps(v)
        return v
    except (TypeError, ValueError):
        return str(v)


def _json_dump_line(obj: Dict[str, Any]) -> str:
    return json.dumps(_json_sanitize(obj), separators=(",", ":"), ensure_ascii=False)


# --------------------------------------------
# JSONL Logger (append-only, thread-safe)
# --------------------------------------------


class JsonlLogger:
    """
    Append-only JSON-lines event log (``<out_dir>/events.jsonl``).

    - One JSON object per line with "ts", "level", "msg" plus structured fields.
    - NaN/Inf and tensors are sanitized.
    - Writes never raise to callers; logging must not break a collective
      sequence half-way.
    - Thread-safe, so simulated ranks may share one logger.
    """

    def __init__(self, out_dir: Path | str, filename: str = "events.jsonl"):
        self.dir = Path(out_dir)
        self.dir.mkdir(parents=True, exist_ok=True)
        self.path = self.dir / filename
        self._lock = threading.Lock()
        self._stream: Optional[io.TextIOBase] = None
        self._open()

    def __enter__(self) -> "JsonlLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _open(self) -> None:
        try:
            self._stream = self.path.open("a", encoding="utf-8")
        except OSError:
            self._stream = None

    def close(self) -> None:
        with self._lock:
            if self._stream is not None:
                try:
                    self._stream.flush()
                    self._stream.close()
                except OSError:
                    pass
            self._stream = None

    def _emit(self, level: str, msg: str, **fields: Any) -> None:
        rec: Dict[str, Any] = {
            "ts": _dt.datetime.now(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": level,
            "msg": msg,
        }
        if fields:
            rec.update(fields)
        line = _json_dump_line(rec)

        with self._lock:
            try:
                if self._stream is None:
                    self._open()
                if self._stream is not None:
                    self._stream.write(line + "\n")
                    self._stream.flush()
            except OSError:
                return

    def info(self, msg: str, **fields: Any) -> None:
        self._emit("INFO", msg, **fields)

    def debug(self, msg: str, **fields: Any) -> None:
        if want_verbose_debug():
            self._emit("DEBUG", msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._emit("WARN", msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._emit("ERROR", msg, **fields)

    def phase_start(self, name: str, **fields: Any) -> None:
        self._emit("INFO", "Phase start", phase=name, **fields)

    def phase_end(self, name: str, **fields: Any) -> None:
        self._emit("INFO", "Phase end", phase=name, **fields)


def log_runtime_environment(logger: JsonlLogger, comm: Any = None, dtype: Any = None) -> None:
    """
    Log python/platform/library versions and the rank layout.
    """
    v: Dict[str, Any] = {
        "python": sys.version.replace("\n", " "),
        "platform": platform.platform(),
        "torch": getattr(torch, "__version__", "unknown"),
    }
    v["numpy"] = np.__version__
    try:
        import mpi4py

        v["mpi4py"] = mpi4py.__version__
    except ImportError:
        v["mpi4py"] = "unavailable"

    if comm is not None:
        v["rank"] = int(comm.rank)
        v["nbproc"] = int(comm.size)
        v["communicator"] = type(comm).__name__
    if dtype is not None:
        v["dtype"] = str(dtype)

    logger.info("Runtime environment.", **v)


__all__ = [
    "JsonlLogger",
    "configure_console_logging",
    "get_log_level",
    "log_runtime_environment",
    "want_verbose_debug",
]
