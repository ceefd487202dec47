"""I/O utilities for chipdb."""

from chipdb.io.bam import check_bam, extract_fragments, get_chrom_lengths
from chipdb.io.readers import read_clusters_tsv, read_windows_tsv
from chipdb.io.regions import neighborhood_regions, promoters, read_bed
from chipdb.io.summary import AnalysisSummary, write_summary
from chipdb.io.writers import write_clusters_bed, write_clusters_tsv, write_windows_tsv

__all__ = [
    # BAM
    "check_bam",
    "extract_fragments",
    "get_chrom_lengths",
    # Regions
    "read_bed",
    "promoters",
    "neighborhood_regions",
    # Readers
    "read_windows_tsv",
    "read_clusters_tsv",
    # Writers
    "write_windows_tsv",
    "write_clusters_tsv",
    "write_clusters_bed",
    # Summary
    "AnalysisSummary",
    "write_summary",
]
