"""Input validation utilities for chipdb.

This module checks BAM files, group labels and counting parameters
before the pipeline starts reading alignments.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pysam

from chipdb.io.bam import check_bam
from chipdb.utils.errors import format_group_mismatch, format_invalid_parameter
from chipdb.utils.logging import get_logger

logger = get_logger(__name__)


class ValidationError(Exception):
    """Raised when input validation fails."""

    pass


def validate_bam(bam_path: str | Path) -> dict:
    """Validate a BAM file and return header metadata.

    Checks:
    - File exists and has an index no older than itself
    - pysam can open it
    - The header declares at least one reference sequence

    Args:
        bam_path: Path to the BAM file.

    Returns:
        dict with keys: references, lengths, sort_order

    Raises:
        AlignmentFileError: If the BAM is missing or its index is
            missing or stale.
        ValidationError: If the file cannot be read as BAM.
    """
    bam_path = Path(bam_path)
    check_bam(bam_path)

    try:
        with pysam.AlignmentFile(str(bam_path), "rb") as bam:
            references = list(bam.references)
            lengths = dict(zip(bam.references, bam.lengths))
            sort_order = bam.header.to_dict().get("HD", {}).get("SO", "unknown")
    except (ValueError, OSError) as e:
        raise ValidationError(f"Cannot read BAM file {bam_path}: {e}") from e

    if not references:
        raise ValidationError(f"BAM header of {bam_path} declares no reference sequences")

    if sort_order != "coordinate":
        logger.warning(f"{bam_path.name}: header sort order is '{sort_order}', not 'coordinate'")

    return {
        "references": references,
        "lengths": lengths,
        "sort_order": sort_order,
    }


def validate_groups(bam_paths: Sequence[str | Path], groups: str | Sequence[str]) -> list[str]:
    """Validate group labels against the BAM files.

    Args:
        bam_paths: Input BAM files.
        groups: One label per BAM, as a sequence or a comma-separated string.

    Returns:
        List of group labels.

    Raises:
        ValidationError: If the counts differ or fewer than two groups are given.
    """
    if isinstance(groups, str):
        labels = [g.strip() for g in groups.split(",")]
    else:
        labels = [g.strip() for g in groups]

    if len(labels) != len(bam_paths):
        raise ValidationError(format_group_mismatch(len(bam_paths), len(labels)))

    if len(set(labels)) < 2:
        raise ValidationError(
            f"At least 2 groups are needed for differential binding, got {sorted(set(labels))}"
        )

    return labels


def validate_count_parameters(
    width: int,
    spacing: int | None,
    ext: int,
    min_count: int,
    minq: int = 0,
    max_frag: int = 500,
) -> None:
    """Validate window counting parameters.

    Checks:
    - width > 0
    - spacing > 0 when given
    - ext > 0
    - min_count >= 0, minq >= 0
    - max_frag > 0

    Raises:
        ValidationError: If any parameter is invalid.
    """
    if width <= 0:
        raise ValidationError(f"width must be positive, got {width}")

    if spacing is not None and spacing <= 0:
        raise ValidationError(f"spacing must be positive, got {spacing}")

    if ext <= 0:
        raise ValidationError(
            format_invalid_parameter(
                "ext",
                ext,
                "fragment length must be positive",
                "Estimate it with 'chipdb fraglen'.",
            )
        )

    if min_count < 0:
        raise ValidationError(f"min_count cannot be negative, got {min_count}")

    if minq < 0:
        raise ValidationError(f"minq cannot be negative, got {minq}")

    if max_frag <= 0:
        raise ValidationError(f"max_frag must be positive, got {max_frag}")

    if spacing is not None and spacing > width:
        logger.debug(f"spacing ({spacing}) exceeds width ({width}): windows will not overlap")


def validate_output_path(out_prefix: str | Path) -> Path:
    """Validate output path and create parent directories.

    Args:
        out_prefix: Output prefix path.

    Returns:
        Resolved Path object.

    Raises:
        ValidationError: If path is invalid or not writable.
    """
    out_path = Path(out_prefix).resolve()
    parent = out_path.parent

    if not parent.exists():
        try:
            parent.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Created output directory: {parent}")
        except OSError as e:
            raise ValidationError(f"Cannot create output directory: {parent}\nError: {e}") from e

    if not parent.is_dir():
        raise ValidationError(f"Output path parent is not a directory: {parent}")

    test_file = parent / f".chipdb_write_test_{out_path.name}"
    try:
        test_file.touch()
        test_file.unlink()
    except OSError as e:
        raise ValidationError(
            f"Cannot write to output directory: {parent}\nCheck file permissions."
        ) from e

    return out_path
