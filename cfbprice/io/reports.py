"""CSV diagnostic artifacts written by batch jobs."""

from __future__ import annotations

import logging
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence

import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_REPORTS_DIR = Path("reports")


def _as_rows(rows: Iterable[Any]) -> List[dict]:
    out = []
    for row in rows:
        if is_dataclass(row) and not isinstance(row, type):
            out.append(asdict(row))
        else:
            out.append(dict(row))
    return out


def write_report(
    name: str,
    rows: Iterable[Any],
    reports_dir: Optional[str | Path] = None,
    *,
    columns: Optional[Sequence[str]] = None,
) -> Path:
    """Write ``rows`` to ``<reports_dir>/<name>``; an empty report keeps its header."""

    directory = Path(reports_dir) if reports_dir is not None else DEFAULT_REPORTS_DIR
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    frame = pd.DataFrame(_as_rows(rows), columns=list(columns) if columns else None)
    tmp = path.with_suffix(path.suffix + ".tmp")
    frame.to_csv(tmp, index=False)
    tmp.replace(path)
    logger.info("Wrote %s (%d rows)", path, len(frame))
    return path


def read_report(path: str | Path) -> pd.DataFrame:
    return pd.read_csv(path)
