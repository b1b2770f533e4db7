"""
Per-contour simplification statistics.

One SimplificationRecord is kept for every contour that made it into a
simplified tree. Records files hold one record per line:

    <error_ratio> <primitive_count> <algorithm_id>
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Union

logger = logging.getLogger(__name__)

DEFAULT_STATS_PATH = "records.txt"


@dataclass(frozen=True)
class SimplificationRecord:
    error_ratio: float
    primitive_count: int
    algorithm: int

    def to_line(self) -> str:
        return f"{self.error_ratio} {self.primitive_count} {self.algorithm}"

    @classmethod
    def from_line(cls, line: str) -> "SimplificationRecord":
        parts = line.split()
        if len(parts) != 3:
            raise ValueError(f"Malformed record line: {line!r}")
        return cls(float(parts[0]), int(parts[1]), int(parts[2]))


def write_records(
    path: Union[str, Path],
    records: Iterable[SimplificationRecord],
) -> Path:
    """Write *records* to *path*, replacing any previous file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    records = list(records)
    with path.open("w", encoding="utf-8") as f:
        for record in records:
            f.write(record.to_line() + "\n")
    logger.info("Wrote %d simplification records to %s", len(records), path)
    return path


def read_records(path: Union[str, Path]) -> List[SimplificationRecord]:
    """Parse a records file; blank lines are ignored."""
    with Path(path).open("r", encoding="utf-8") as f:
        return [SimplificationRecord.from_line(line) for line in f if line.strip()]


def summarize_records(records: Iterable[SimplificationRecord]) -> Dict[str, object]:
    """Aggregate counts and means, overall and per algorithm id."""
    records = list(records)
    by_algorithm: Dict[int, List[SimplificationRecord]] = {}
    for record in records:
        by_algorithm.setdefault(record.algorithm, []).append(record)

    def _stats(group: List[SimplificationRecord]) -> Dict[str, float]:
        n = len(group)
        return {
            "count": n,
            "mean_error_ratio": sum(r.error_ratio for r in group) / n if n else 0.0,
            "mean_primitive_count": sum(r.primitive_count for r in group) / n if n else 0.0,
            "total_primitive_count": sum(r.primitive_count for r in group),
        }

    return {
        "overall": _stats(records),
        "by_algorithm": {
            str(alg): _stats(group) for alg, group in sorted(by_algorithm.items())
        },
    }
