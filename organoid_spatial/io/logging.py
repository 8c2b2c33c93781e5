"""Structured run records for organoid-spatial.

JSON documents for the run manifest, JSON lines for the run history and
YAML blocks for the resolved configuration.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Union

import yaml

PathLike = Union[str, Path]


def _prepare_log_destination(log_path: PathLike) -> Path:
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_json(path: PathLike, record: dict[str, Any]) -> Path:
    """Write one JSON document (e.g. the run manifest), replacing the file."""
    path = _prepare_log_destination(path)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(record, handle, indent=2, default=str)
        handle.write("\n")
    return path


def log_json(log_path: PathLike, record: dict[str, Any]) -> None:
    """Add one run to the JSON-lines run history.

    Each call writes ``record`` as a single line, so ``logs/runs.jsonl``
    keeps one entry per analysis run in the same output directory.
    """
    path = _prepare_log_destination(log_path)
    line = json.dumps(record, default=str)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{line}\n")


def log_yaml(
    log_path: PathLike | None,
    record: dict[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Record a settings block (e.g. the resolved analysis config) as YAML.

    The block is closed by a ``---`` line so several blocks can share one
    file or run log.

    Parameters
    ----------
    log_path : PathLike, optional
        File the block is appended to. Not used when ``logger`` is given.
    record : dict
        Settings to dump, keys kept in insertion order
    logger : logging.Logger, optional
        Run logger that receives the block at INFO level

    Raises
    ------
    ValueError
        If neither a file nor a logger is given
    """
    block = yaml.safe_dump(record, sort_keys=False).rstrip("\n") + "\n---"
    if logger is not None:
        logger.info("%s", block)
    elif log_path is None:
        raise ValueError("log_yaml needs a log_path or a logger")
    else:
        path = _prepare_log_destination(log_path)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"{block}\n")
