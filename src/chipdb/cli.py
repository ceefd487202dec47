"""Command-line interface for chipdb.

This module defines the Click-based CLI for the chipdb package,
providing commands for window-based differential binding analysis of
ChIP-seq BAM files.
"""

from __future__ import annotations

import functools
from pathlib import Path

import click
import numpy as np
from rich.console import Console
from rich.table import Table

from chipdb import __version__
from chipdb.analysis.clustering import cluster_summits, combine_tests, merge_windows, upweight_summit
from chipdb.analysis.counting import (
    correlate_reads,
    library_totals,
    maximize_ccf,
    region_counts,
    window_counts,
)
from chipdb.analysis.filtering import (
    AnnotationFilter,
    ControlFilter,
    CountFilter,
    GlobalFilter,
    LocalFilter,
    ProportionFilter,
    apply_filter,
    filter_windows,
)
from chipdb.analysis.normalization import (
    CompositionNormalization,
    EfficiencyNormalization,
    SpikeInNormalization,
    TrendedNormalization,
    normalize,
)
from chipdb.analysis.testing import DEFAULT_LRT_DISPERSION, find_db_windows
from chipdb.core.models import ReadParam, Region
from chipdb.core.stats import adjust_pvalues
from chipdb.io.regions import neighborhood_regions, read_bed
from chipdb.io.summary import AnalysisSummary, write_summary
from chipdb.io.writers import write_clusters_bed, write_clusters_tsv, write_windows_tsv
from chipdb.utils.errors import ChipDBError, format_no_windows_error
from chipdb.utils.logging import (
    log_step,
    print_error,
    print_info,
    print_stats,
    print_success,
    print_warning,
    setup_logging,
)
from chipdb.utils.validation import (
    ValidationError,
    validate_bam,
    validate_count_parameters,
    validate_groups,
    validate_output_path,
)

console = Console(stderr=True)

# Context settings for all commands
CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}

FILTER_CHOICES = ["global", "proportion", "count", "local", "control", "annotation"]
NORM_CHOICES = ["composition", "efficiency", "trended", "spikein", "none"]


def read_options(func):
    """Attach the read-extraction options shared by every counting command."""
    options = [
        click.option(
            "--minq",
            default=None,
            type=int,
            metavar="INT",
            help="Minimum mapping quality. Unset keeps every mapped read.",
        ),
        click.option(
            "--dedup/--no-dedup",
            default=False,
            show_default=True,
            help="Skip reads flagged as duplicates.",
        ),
        click.option(
            "--pe",
            type=click.Choice(["none", "both", "first", "second"]),
            default="none",
            show_default=True,
            help="Paired-end mode: count proper pairs as fragments (both) or use one mate.",
        ),
        click.option(
            "--max-frag",
            default=500,
            show_default=True,
            type=int,
            metavar="BP",
            help="Maximum fragment size for --pe both.",
        ),
        click.option(
            "--restrict",
            multiple=True,
            metavar="CHROM",
            help="Only count these chromosomes. Repeat for several.",
        ),
        click.option(
            "--discard",
            type=click.Path(exists=True, path_type=Path),
            default=None,
            metavar="BED",
            help="BED file of blacklisted regions; reads inside them are skipped.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _read_param(
    minq: int | None,
    dedup: bool,
    pe: str,
    max_frag: int,
    restrict: tuple[str, ...],
    discard: Path | None,
) -> ReadParam:
    """Build the single ReadParam used by every counting call of a command."""
    return ReadParam(
        minq=minq,
        dedup=dedup,
        pe=pe,
        max_frag=max_frag,
        restrict=restrict or None,
        discard=tuple(read_bed(discard)) if discard else (),
    )


def handle_errors(func):
    """Report chipdb, validation and value errors and exit with status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        ctx = click.get_current_context()
        verbose = (ctx.obj or {}).get("verbose", False)
        try:
            return func(*args, **kwargs)
        except ChipDBError as e:
            e.display()
            if verbose:
                console.print_exception()
            raise SystemExit(1) from e
        except (ValidationError, ValueError, FileNotFoundError) as e:
            print_error(str(e))
            if verbose:
                console.print_exception()
            raise SystemExit(1) from e

    return wrapper


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(version=__version__, prog_name="chipdb")
@click.option(
    "--verbose", "-v", is_flag=True, default=False, help="Enable verbose output"
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """chipdb: differential binding analysis of ChIP-seq data.

    Count fragments in sliding windows, filter out background, normalize,
    test every window with quasi-likelihood negative binomial models and
    combine window results into differentially bound regions.

    \b
    Quick start:
        chipdb run --bam wt1.bam --bam wt2.bam --bam ko1.bam --bam ko2.bam \\
            --group wt --group wt --group ko --group ko -o results

    \b
    Common workflows:
        chipdb libsizes --bam *.bam              # Library totals
        chipdb fraglen --bam *.bam               # Fragment length estimate
        chipdb run --bam ... --group ... -o out  # Full analysis
        chipdb plot --windows out_windows.tsv    # Regenerate plots
    """
    import logging

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    setup_logging(level=level)


@cli.command()
@click.option(
    "--bam",
    "bams",
    required=True,
    multiple=True,
    type=click.Path(exists=True, path_type=Path),
    metavar="FILE",
    help="Indexed BAM file. Repeat for several.",
)
@read_options
@handle_errors
def libsizes(
    bams: tuple[Path, ...],
    minq: int | None,
    dedup: bool,
    pe: str,
    max_frag: int,
    restrict: tuple[str, ...],
    discard: Path | None,
) -> None:
    """Show the number of fragments passing the read filters per BAM.

    Totals are what every count matrix built with the same options
    reports as library sizes; matrices counted with different options
    cannot share normalization factors.

    \b
    Example:
        chipdb libsizes --bam wt1.bam --bam ko1.bam --minq 20 --dedup
    """
    param = _read_param(minq, dedup, pe, max_frag, restrict, discard)
    for bam in bams:
        validate_bam(bam)

    totals = library_totals(bams, param)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("BAM")
    table.add_column("Fragments", justify="right")
    for bam, total in zip(bams, totals):
        table.add_row(bam.name, f"{int(total):,}")

    console.print(table)


@cli.command()
@click.option(
    "--bam",
    "bams",
    required=True,
    multiple=True,
    type=click.Path(exists=True, path_type=Path),
    metavar="FILE",
    help="Indexed BAM file. Repeat for several.",
)
@click.option(
    "--max-dist",
    default=1000,
    show_default=True,
    type=int,
    metavar="BP",
    help="Largest strand shift to evaluate.",
)
@click.option(
    "--ignore",
    default=100,
    show_default=True,
    type=int,
    metavar="BP",
    help="Shifts below this are skipped to avoid the read-length phantom peak.",
)
@read_options
@handle_errors
def fraglen(
    bams: tuple[Path, ...],
    max_dist: int,
    ignore: int,
    minq: int | None,
    dedup: bool,
    pe: str,
    max_frag: int,
    restrict: tuple[str, ...],
    discard: Path | None,
) -> None:
    """Estimate the fragment length from strand cross-correlation.

    \b
    Example:
        chipdb fraglen --bam wt1.bam --bam ko1.bam --max-dist 800
    """
    param = _read_param(minq, dedup, pe, max_frag, restrict, discard)
    for bam in bams:
        validate_bam(bam)

    profile = correlate_reads(bams, max_dist=max_dist, param=param)
    length = maximize_ccf(profile, ignore=ignore)

    print_stats(
        {
            "Fragment length (bp)": length,
            "Correlation at peak": float(profile[length]),
            "Correlation at max-dist": float(profile[-1]),
        },
        title="Cross-correlation",
    )
    print_success(f"Estimated fragment length: {length} bp (use --ext {length})")


def _build_filter(
    name: str,
    data,
    bins,
    bams: list[Path],
    ext: int,
    param: ReadParam,
    workers: int,
    min_fc: float,
    prop: float,
    filter_count: int,
    local_width: int,
    bin_size: int,
    control: tuple[Path, ...],
    regions: Path | None,
):
    """Map the --filter choice onto a filter strategy."""
    if name == "global":
        return GlobalFilter(background=bins, min_fc=min_fc)
    if name == "proportion":
        return ProportionFilter(prop=prop)
    if name == "count":
        return CountFilter(min_count=filter_count)
    if name == "local":
        neighborhood = region_counts(
            bams,
            neighborhood_regions(data, local_width),
            ext=ext,
            param=param,
            final_ext=data.final_ext,
            workers=workers,
        )
        return LocalFilter(neighborhood=neighborhood, min_fc=min_fc)
    if name == "control":
        if not control:
            raise ValidationError("--filter control needs at least one --control BAM")
        windows = [Region(c, s, e) for c, s, e in data.intervals()]
        control_counts = region_counts(
            control, windows, ext=ext, param=param, final_ext=data.final_ext, workers=workers
        )
        control_bins = window_counts(control, width=bin_size, param=param, bin=True, workers=workers)
        return ControlFilter(
            control=control_counts,
            control_bins=control_bins,
            chip_bins=bins,
            min_fc=min_fc,
        )
    if name == "annotation":
        if regions is None:
            raise ValidationError("--filter annotation needs --regions BED")
        return AnnotationFilter(regions=tuple(read_bed(regions)))
    raise ValidationError(f"Unknown filter: {name}")


def _build_normalization(name: str, bins, min_fc: float, spike_chroms: tuple[str, ...] = ()):
    """Map the --norm choice onto a normalization strategy (None for no scaling)."""
    if name == "spikein":
        spike = bins.subset(np.isin(bins.chrom, list(spike_chroms)))
        if len(spike) == 0:
            raise ChipDBError(format_no_windows_error("counting spike-in bins"))
        return SpikeInNormalization(spike_counts=spike)
    if name == "composition":
        return CompositionNormalization(bins=bins)
    if name == "efficiency":
        enriched = filter_windows(bins, GlobalFilter(min_fc=min_fc))
        if enriched.n_kept == 0:
            raise ChipDBError(
                format_no_windows_error("selecting enriched bins for efficiency normalization")
            )
        return EfficiencyNormalization(windows=bins.subset(enriched.keep))
    if name == "trended":
        return TrendedNormalization()
    return None


@cli.command()
@click.option(
    "--bam",
    "bams",
    required=True,
    multiple=True,
    type=click.Path(exists=True, path_type=Path),
    metavar="FILE",
    help="Indexed ChIP BAM file. Repeat for several; column order follows.",
)
@click.option(
    "--group",
    "groups",
    required=True,
    multiple=True,
    metavar="LABEL",
    help="Group label of each --bam, in the same order. The first label is the reference.",
)
@click.option(
    "--out",
    "-o",
    required=True,
    type=click.Path(path_type=Path),
    metavar="PREFIX",
    help="Output prefix. Files will be named {PREFIX}_windows.tsv, etc.",
)
@click.option(
    "--width",
    default=150,
    show_default=True,
    type=int,
    metavar="BP",
    help="Window width. Small for transcription factors, large for histone marks.",
)
@click.option(
    "--spacing",
    default=None,
    type=int,
    metavar="BP",
    help="Distance between window starts [default: width / 2].",
)
@click.option(
    "--ext",
    default=100,
    show_default=True,
    type=int,
    metavar="BP",
    help="Fragment length for single-end reads (see 'chipdb fraglen').",
)
@click.option(
    "--min-count",
    default=10,
    show_default=True,
    type=int,
    metavar="INT",
    help="Minimum summed count for a window to be kept at counting time.",
)
@click.option(
    "--filter",
    "filter_name",
    type=click.Choice(FILTER_CHOICES),
    default="global",
    show_default=True,
    help="Abundance filter applied before testing.",
)
@click.option(
    "--min-fc",
    default=3.0,
    show_default=True,
    type=float,
    metavar="FLOAT",
    help="Minimum fold enrichment for global, local and control filters.",
)
@click.option(
    "--prop",
    default=0.01,
    show_default=True,
    type=float,
    metavar="FLOAT",
    help="Proportion of genome windows kept by the proportion filter.",
)
@click.option(
    "--filter-count",
    default=20,
    show_default=True,
    type=int,
    metavar="INT",
    help="Minimum summed count for the count filter.",
)
@click.option(
    "--local-width",
    default=2000,
    show_default=True,
    type=int,
    metavar="BP",
    help="Neighbourhood width for the local filter.",
)
@click.option(
    "--control",
    multiple=True,
    type=click.Path(exists=True, path_type=Path),
    metavar="FILE",
    help="Input/control BAM for the control filter. Repeat for several.",
)
@click.option(
    "--regions",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    metavar="BED",
    help="Regions of interest for the annotation filter.",
)
@click.option(
    "--bin-size",
    default=10000,
    show_default=True,
    type=int,
    metavar="BP",
    help="Background bin size for global filtering and normalization.",
)
@click.option(
    "--norm",
    type=click.Choice(NORM_CHOICES),
    default="composition",
    show_default=True,
    help="Normalization strategy.",
)
@click.option(
    "--spike-chrom",
    multiple=True,
    metavar="CHROM",
    help="Spike-in chromosome for --norm spikein. Repeat for several.",
)
@click.option(
    "--coef",
    default=None,
    metavar="NAME",
    help="Design coefficient to test, e.g. groupko [default: last].",
)
@click.option(
    "--robust/--no-robust",
    default=True,
    show_default=True,
    help="Robust estimation of the QL prior degrees of freedom.",
)
@click.option(
    "--dispersion",
    default=None,
    type=float,
    metavar="FLOAT",
    help=(
        "Fixed NB dispersion. Used for the likelihood ratio test without replicates "
        f"[default: {DEFAULT_LRT_DISPERSION}] and instead of the trend otherwise."
    ),
)
@click.option(
    "--tol",
    default=100,
    show_default=True,
    type=int,
    metavar="BP",
    help="Maximum gap between windows merged into one cluster.",
)
@click.option(
    "--max-width",
    default=5000,
    show_default=True,
    type=int,
    metavar="BP",
    help="Clusters wider than this are split. 0 disables splitting.",
)
@click.option(
    "--summit-weight/--no-summit-weight",
    default=False,
    show_default=True,
    help="Upweight the most abundant window of each cluster.",
)
@click.option(
    "--fdr",
    default=0.05,
    show_default=True,
    type=float,
    metavar="FLOAT",
    help="Cluster FDR threshold for the BED output and summary.",
)
@click.option(
    "--workers",
    default=1,
    show_default=True,
    type=int,
    metavar="INT",
    help="Processes used to count BAM files in parallel.",
)
@click.option(
    "--plot/--no-plot",
    default=True,
    show_default=True,
    help="Generate diagnostic plots.",
)
@read_options
@click.pass_context
@handle_errors
def run(
    ctx: click.Context,
    bams: tuple[Path, ...],
    groups: tuple[str, ...],
    out: Path,
    width: int,
    spacing: int | None,
    ext: int,
    min_count: int,
    filter_name: str,
    min_fc: float,
    prop: float,
    filter_count: int,
    local_width: int,
    control: tuple[Path, ...],
    regions: Path | None,
    bin_size: int,
    norm: str,
    spike_chrom: tuple[str, ...],
    coef: str | None,
    robust: bool,
    dispersion: float | None,
    tol: int,
    max_width: int,
    summit_weight: bool,
    fdr: float,
    workers: int,
    plot: bool,
    minq: int | None,
    dedup: bool,
    pe: str,
    max_frag: int,
    restrict: tuple[str, ...],
    discard: Path | None,
) -> None:
    """Run the complete differential binding pipeline.

    Counts fragments into sliding windows, filters out background
    windows, normalizes the libraries, tests every window with a
    quasi-likelihood F-test (a likelihood ratio test without
    replicates), merges adjacent windows into clusters and combines
    their p-values.

    \b
    Examples:
      Transcription factor, two replicates per group:
        chipdb run --bam wt1.bam --bam wt2.bam --bam ko1.bam --bam ko2.bam \\
            --group wt --group wt --group ko --group ko --width 10 -o tf

      Broad histone mark with trended normalization:
        chipdb run --bam ... --group ... --width 500 --spacing 100 \\
            --norm trended --tol 500 -o h3k27me3

    \b
    Output files:
      {PREFIX}_windows.tsv        Per-window counts and test results
      {PREFIX}_clusters.tsv       Per-cluster combined results
      {PREFIX}_clusters.bed       Significant clusters in BED format
      {PREFIX}_summary.txt        Analysis summary
      {PREFIX}_*.png              Diagnostic plots (if --plot)
    """
    bams = list(bams)
    total_steps = 6

    labels = validate_groups(bams, groups)
    validate_count_parameters(width, spacing, ext, min_count, minq or 0, max_frag)
    out = validate_output_path(out)
    for bam in bams:
        validate_bam(bam)
    param = _read_param(minq, dedup, pe, max_frag, restrict, discard)
    if norm == "spikein" and not spike_chrom:
        raise ValidationError("--norm spikein needs at least one --spike-chrom")
    if dispersion is not None and dispersion <= 0:
        raise ValidationError(f"--dispersion must be positive, got {dispersion}")

    print_info("Starting differential binding analysis")
    print_info(f"Samples: {', '.join(f'{b.name} [{g}]' for b, g in zip(bams, labels))}")
    print_info(f"Window: {width} bp, spacing: {spacing or max(1, width // 2)} bp, ext: {ext} bp")
    print_info(f"Filter: {filter_name}, normalization: {norm}")
    print_info(f"Output prefix: {out}")

    parameters = {
        "width": width,
        "spacing": spacing or max(1, width // 2),
        "ext": ext,
        "min_count": min_count,
        "filter": filter_name,
        "min_fc": min_fc,
        "bin_size": bin_size,
        "normalization": norm,
        "robust": robust,
        "dispersion": dispersion if dispersion is not None else "estimated",
        "tol": tol,
        "max_width": max_width,
        "fdr": fdr,
        "minq": minq if minq is not None else "none",
        "dedup": dedup,
        "pe": pe,
    }

    # Counting
    log_step(1, total_steps, "Counting fragments into windows")
    data = window_counts(
        bams,
        width=width,
        spacing=spacing,
        ext=ext,
        param=param,
        filter=min_count,
        workers=workers,
    )
    if len(data) == 0:
        raise ChipDBError(format_no_windows_error("counting"))
    if norm == "spikein":
        data = data.subset(~np.isin(data.chrom, list(spike_chrom)))
        print_info(f"Spike-in chromosomes excluded from testing: {', '.join(spike_chrom)}")
        if len(data) == 0:
            raise ChipDBError(format_no_windows_error("removing spike-in windows"))

    needs_bins = filter_name in ("global", "control") or norm in (
        "composition",
        "efficiency",
        "spikein",
    )
    bins = None
    if needs_bins:
        bins = window_counts(bams, width=bin_size, param=param, bin=True, workers=workers)

    print_stats(
        {
            "Windows counted": len(data),
            **{f"Library {s}": int(t) for s, t in zip(data.samples, data.totals)},
        },
        title="Counting",
    )

    # Filtering
    log_step(2, total_steps, f"Filtering windows ({filter_name})")
    strategy = _build_filter(
        filter_name,
        data,
        bins,
        bams,
        ext,
        param,
        workers,
        min_fc,
        prop,
        filter_count,
        local_width,
        bin_size,
        control,
        regions,
    )
    filtered, filter_result = apply_filter(data, strategy)
    if len(filtered) == 0:
        raise ChipDBError(format_no_windows_error(f"{filter_name} filtering"))
    print_info(f"Retained {len(filtered):,} of {len(data):,} windows")

    # Normalization
    log_step(3, total_steps, f"Normalizing ({norm})")
    norm_strategy = _build_normalization(norm, bins, min_fc, spike_chrom)
    normed = filtered if norm_strategy is None else normalize(filtered, norm_strategy)

    # Testing
    log_step(4, total_steps, "Testing windows for differential binding")
    result, fit = find_db_windows(
        normed, labels, contrast=coef, robust=robust, dispersion=dispersion
    )
    if fit is None:
        if dispersion is None:
            dispersion = DEFAULT_LRT_DISPERSION
        parameters["dispersion"] = dispersion
        print_warning(
            "No residual degrees of freedom: using a likelihood ratio test "
            f"at dispersion {dispersion:g}"
        )
    elif fit.infinite_prior_df:
        print_warning("QL prior degrees of freedom are infinite; check for batch effects")

    # Clustering
    log_step(5, total_steps, "Clustering windows")
    merged = merge_windows(normed, tol=tol, max_width=max_width or None)
    weights = None
    if summit_weight:
        weights = upweight_summit(merged.ids, cluster_summits(merged.ids, result.logcpm))
    clusters = combine_tests(merged.ids, result.pvalue, result.logfc, weights=weights)

    significant = clusters.significant(fdr)
    n_up = int(np.sum(significant & (clusters.direction == "up")))
    n_down = int(np.sum(significant & (clusters.direction == "down")))
    top_cluster = None
    if len(clusters) > 0 and np.any(np.isfinite(clusters.pvalue)):
        k = int(np.nanargmin(clusters.pvalue))
        top_cluster = (
            f"{merged.chrom[k]}:{merged.start[k]:,}-{merged.end[k]:,} "
            f"(FDR {clusters.fdr[k]:.3g}, {clusters.direction[k]})"
        )

    print_stats(
        {
            "Clusters": len(clusters),
            f"Clusters FDR <= {fdr}": int(significant.sum()),
            "Up": n_up,
            "Down": n_down,
        },
        title="Clusters",
    )

    # Output
    log_step(6, total_steps, "Writing results")
    out_windows = Path(f"{out}_windows.tsv")
    out_clusters = Path(f"{out}_clusters.tsv")
    out_bed = Path(f"{out}_clusters.bed")
    out_summary = Path(f"{out}_summary.txt")

    write_windows_tsv(normed, result, out_windows, cluster_ids=merged.ids)
    write_clusters_tsv(merged, clusters, normed, out_clusters)
    write_clusters_bed(merged, clusters, out_bed, fdr_threshold=fdr)

    summary = AnalysisSummary(
        bam_paths=[str(b) for b in bams],
        groups=labels,
        library_sizes=[int(t) for t in normed.totals],
        norm_factors=[float(f) for f in normed.norm_factors],
        normalization=norm,
        windows_counted=len(data),
        filter_name=filter_name,
        windows_retained=len(filtered),
        windows_significant=int(np.sum(result.pvalue <= 0.05)),
        clusters=len(clusters),
        clusters_significant=int(significant.sum()),
        clusters_up=n_up,
        clusters_down=n_down,
        test=result.method,
        dispersion=dispersion,
        df_prior=None if fit is None else float(fit.df_prior),
        infinite_prior_df=fit is not None and fit.infinite_prior_df,
        top_cluster=top_cluster,
        parameters=parameters,
    )
    write_summary(summary, out_summary)

    plot_files: list[Path] = []
    if plot:
        print_info("Generating plots...")
        import matplotlib.pyplot as plt

        from chipdb.plotting.diagnostics import (
            plot_filter_histogram,
            plot_norm_ma,
            plot_ql_dispersion,
            plot_result_ma,
        )
        from chipdb.plotting.genome import plot_genome_wide

        out_filter = Path(f"{out}_filter")
        fig = plot_filter_histogram(
            filter_result.statistic,
            filter_result.threshold,
            output_path=out_filter,
            xlabel=f"{type(strategy).__name__} statistic",
        )
        plt.close(fig)
        plot_files.append(out_filter.with_suffix(".png"))

        if bins is not None and norm in ("composition", "efficiency") and bins.n_samples > 1:
            out_norm = Path(f"{out}_norm_ma")
            fig = plot_norm_ma(bins.with_norm_factors(normed.norm_factors), output_path=out_norm)
            plt.close(fig)
            plot_files.append(out_norm.with_suffix(".png"))

        if fit is not None:
            out_disp = Path(f"{out}_ql_dispersion")
            fig = plot_ql_dispersion(fit, output_path=out_disp)
            plt.close(fig)
            plot_files.append(out_disp.with_suffix(".png"))

        window_fdr = adjust_pvalues(result.pvalue)
        out_ma = Path(f"{out}_ma")
        fig = plot_result_ma(result.logcpm, result.logfc, window_fdr <= fdr, output_path=out_ma)
        plt.close(fig)
        plot_files.append(out_ma.with_suffix(".png"))

        highlight = [
            (str(merged.chrom[k]), int(merged.start[k]), int(merged.end[k]))
            for k in np.flatnonzero(significant)
        ]
        out_genome = Path(f"{out}_genome_wide")
        fig = plot_genome_wide(
            normed.chrom,
            normed.start,
            normed.end,
            result.logfc,
            result.pvalue,
            highlight=highlight,
            output_path=out_genome,
        )
        plt.close(fig)
        plot_files.append(out_genome.with_suffix(".png"))

    print_success("Analysis complete!")
    print_info("Output files:")
    print_info(f"  Windows: {out_windows}")
    print_info(f"  Clusters (TSV): {out_clusters}")
    print_info(f"  Clusters (BED): {out_bed}")
    print_info(f"  Summary: {out_summary}")
    if plot_files:
        print_info("  Plots:")
        for pf in plot_files:
            print_info(f"    {pf}")


@cli.command()
@click.option(
    "--windows",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Windows TSV file from a previous run",
)
@click.option(
    "--clusters",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Clusters TSV file from a previous run, to shade significant clusters",
)
@click.option(
    "--out",
    "-o",
    required=True,
    type=click.Path(path_type=Path),
    help="Output prefix for plot files",
)
@click.option(
    "--fdr",
    default=0.05,
    show_default=True,
    type=float,
    help="FDR threshold for highlighting windows and clusters",
)
@handle_errors
def plot(windows: Path, clusters: Path | None, out: Path, fdr: float) -> None:
    """Generate plots from existing analysis output.

    Re-generate the MA, abundance and genome-wide plots without
    re-running the analysis.

    \b
    Example:
        chipdb plot --windows run_windows.tsv --clusters run_clusters.tsv -o replot
    """
    import matplotlib.pyplot as plt

    from chipdb.io.readers import read_clusters_tsv, read_windows_tsv
    from chipdb.plotting.diagnostics import plot_filter_histogram, plot_result_ma
    from chipdb.plotting.genome import plot_genome_wide

    print_info("Generating plots from existing data...")

    table = read_windows_tsv(windows)
    if len(table) == 0:
        print_error("No windows found in input file")
        raise SystemExit(1)

    highlight = None
    if clusters:
        cluster_table = read_clusters_tsv(clusters)
        keep = np.nan_to_num(cluster_table.fdr, nan=1.0) <= fdr
        highlight = [
            (str(c), int(s), int(e))
            for c, s, e in zip(
                cluster_table.chrom[keep], cluster_table.start[keep], cluster_table.end[keep]
            )
        ]

    out = validate_output_path(out)
    window_fdr = adjust_pvalues(table.pvalue)

    fig = plot_result_ma(table.logcpm, table.logfc, window_fdr <= fdr, output_path=Path(f"{out}_ma"))
    plt.close(fig)

    fig = plot_filter_histogram(
        table.logcpm, output_path=Path(f"{out}_abundance"), xlabel="Average log2 CPM"
    )
    plt.close(fig)

    fig = plot_genome_wide(
        table.chrom,
        table.start,
        table.end,
        table.logfc,
        table.pvalue,
        highlight=highlight,
        output_path=Path(f"{out}_genome_wide"),
    )
    plt.close(fig)

    print_success("Generated 3 plot file(s)")
    print_info(f"Output: {out}_*.png")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
