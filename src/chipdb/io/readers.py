"""TSV file readers for chipdb.

This module reads the window and cluster tables written by
``chipdb.io.writers`` back into arrays, so plots can be regenerated
from an existing analysis.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np

from chipdb.utils.logging import get_logger

logger = get_logger(__name__)

_WINDOW_COLUMNS = ("chrom", "start", "end", "logFC", "logCPM", "PValue", "cluster")
_CLUSTER_COLUMNS = (
    "rank",
    "cluster",
    "chrom",
    "start",
    "end",
    "n_windows",
    "n_up",
    "n_down",
    "PValue",
    "FDR",
    "direction",
    "rep_logFC",
)


def _float(value: str) -> float:
    return np.nan if value == "NA" else float(value)


@dataclass
class WindowTable:
    """Window results read back from a windows TSV.

    Attributes:
        chrom: Chromosome of each window.
        start: Window start (1-based).
        end: Window end.
        samples: Sample names of the count columns.
        counts: Count matrix (n_windows, n_samples).
        logfc: Log2 fold change.
        logcpm: Average log2-CPM.
        statistic: F or LR statistic.
        statistic_name: ``F`` or ``LR``.
        pvalue: Window p-value.
        cluster: 1-based cluster id, 0 when absent.
    """

    chrom: np.ndarray
    start: np.ndarray
    end: np.ndarray
    samples: tuple[str, ...]
    counts: np.ndarray
    logfc: np.ndarray
    logcpm: np.ndarray
    statistic: np.ndarray
    statistic_name: str
    pvalue: np.ndarray
    cluster: np.ndarray

    def __len__(self) -> int:
        return len(self.start)


@dataclass
class ClusterTable:
    """Cluster results read back from a clusters TSV."""

    cluster: np.ndarray
    chrom: np.ndarray
    start: np.ndarray
    end: np.ndarray
    n_windows: np.ndarray
    n_up: np.ndarray
    n_down: np.ndarray
    pvalue: np.ndarray
    fdr: np.ndarray
    direction: np.ndarray
    rep_logfc: np.ndarray

    def __len__(self) -> int:
        return len(self.start)


def read_windows_tsv(path: str | Path) -> WindowTable:
    """Read window results from a TSV file.

    Args:
        path: Path to a ``*_windows.tsv`` file.

    Returns:
        WindowTable.

    Raises:
        FileNotFoundError: If file doesn't exist.
        ValueError: If file format is invalid.
    """
    path = Path(path)
    logger.info(f"Reading windows from {path}")

    if not path.exists():
        raise FileNotFoundError(f"Windows file not found: {path}")

    with open(path) as f:
        header = f.readline().rstrip("\n").split("\t")
        missing = [col for col in _WINDOW_COLUMNS if col not in header]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")
        stat_name = "F" if "F" in header else "LR"
        if stat_name not in header:
            raise ValueError("Missing statistic column (F or LR)")

        col_idx = {col: i for i, col in enumerate(header)}
        sample_cols = header[3 : col_idx["logFC"]]

        rows = []
        for line_num, line in enumerate(f, start=2):
            line = line.rstrip("\n")
            if not line:
                continue
            fields = line.split("\t")
            if len(fields) != len(header):
                raise ValueError(f"Line {line_num}: expected {len(header)} columns, got {len(fields)}")
            rows.append(fields)

    def column(name: str) -> list[str]:
        return [r[col_idx[name]] for r in rows]

    counts = np.array(
        [[int(r[col_idx[s]]) for s in sample_cols] for r in rows], dtype=np.int64
    ).reshape(len(rows), len(sample_cols))
    table = WindowTable(
        chrom=np.array(column("chrom"), dtype=object),
        start=np.array([int(v) for v in column("start")], dtype=np.int64),
        end=np.array([int(v) for v in column("end")], dtype=np.int64),
        samples=tuple(sample_cols),
        counts=counts,
        logfc=np.array([_float(v) for v in column("logFC")]),
        logcpm=np.array([_float(v) for v in column("logCPM")]),
        statistic=np.array([_float(v) for v in column(stat_name)]),
        statistic_name=stat_name,
        pvalue=np.array([_float(v) for v in column("PValue")]),
        cluster=np.array([0 if v == "NA" else int(v) for v in column("cluster")], dtype=np.int64),
    )

    logger.info(f"Read {len(table):,} windows")
    return table


def read_clusters_tsv(path: str | Path) -> ClusterTable:
    """Read cluster results from a TSV file.

    Args:
        path: Path to a ``*_clusters.tsv`` file.

    Returns:
        ClusterTable in file (rank) order.

    Raises:
        FileNotFoundError: If file doesn't exist.
        ValueError: If file format is invalid.
    """
    path = Path(path)
    logger.info(f"Reading clusters from {path}")

    if not path.exists():
        raise FileNotFoundError(f"Clusters file not found: {path}")

    with open(path) as f:
        header = f.readline().rstrip("\n").split("\t")
        missing = [col for col in _CLUSTER_COLUMNS if col not in header]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")
        col_idx = {col: i for i, col in enumerate(header)}
        rows = [line.rstrip("\n").split("\t") for line in f if line.strip()]

    def column(name: str) -> list[str]:
        return [r[col_idx[name]] for r in rows]

    table = ClusterTable(
        cluster=np.array([int(v) for v in column("cluster")], dtype=np.int64),
        chrom=np.array(column("chrom"), dtype=object),
        start=np.array([int(v) for v in column("start")], dtype=np.int64),
        end=np.array([int(v) for v in column("end")], dtype=np.int64),
        n_windows=np.array([int(v) for v in column("n_windows")], dtype=np.int64),
        n_up=np.array([int(v) for v in column("n_up")], dtype=np.int64),
        n_down=np.array([int(v) for v in column("n_down")], dtype=np.int64),
        pvalue=np.array([_float(v) for v in column("PValue")]),
        fdr=np.array([_float(v) for v in column("FDR")]),
        direction=np.array(column("direction"), dtype=object),
        rep_logfc=np.array([_float(v) for v in column("rep_logFC")]),
    )

    logger.info(f"Read {len(table):,} clusters")
    return table
