"""Analysis modules for chipdb."""

from chipdb.analysis.clustering import (
    cluster_summits,
    combine_overlaps,
    combine_tests,
    empirical_fdr,
    find_overlaps,
    get_best_overlaps,
    get_best_test,
    merge_windows,
    minimal_tests,
    mixed_tests,
    upweight_summit,
)
from chipdb.analysis.counting import (
    check_totals,
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
    FilterResult,
    FilterStrategy,
    GlobalFilter,
    LocalFilter,
    ProportionFilter,
    apply_filter,
    filter_windows,
    scale_control,
    scaled_average,
)
from chipdb.analysis.normalization import (
    CompositionNormalization,
    EfficiencyNormalization,
    NormalizationStrategy,
    SpikeInNormalization,
    TrendedNormalization,
    calc_norm_factors,
    normalize,
    transplant_norm_factors,
)
from chipdb.analysis.testing import (
    QLFit,
    estimate_disp,
    find_db_windows,
    glm_lrt,
    glm_ql_fit,
    glm_ql_ftest,
    make_contrast,
    make_design,
)

__all__ = [
    # Counting
    "window_counts",
    "region_counts",
    "library_totals",
    "check_totals",
    "correlate_reads",
    "maximize_ccf",
    # Filtering
    "CountFilter",
    "ProportionFilter",
    "GlobalFilter",
    "LocalFilter",
    "ControlFilter",
    "AnnotationFilter",
    "FilterStrategy",
    "FilterResult",
    "filter_windows",
    "apply_filter",
    "scaled_average",
    "scale_control",
    # Normalization
    "CompositionNormalization",
    "EfficiencyNormalization",
    "TrendedNormalization",
    "SpikeInNormalization",
    "NormalizationStrategy",
    "calc_norm_factors",
    "transplant_norm_factors",
    "normalize",
    # Testing
    "make_design",
    "make_contrast",
    "estimate_disp",
    "glm_ql_fit",
    "glm_ql_ftest",
    "glm_lrt",
    "find_db_windows",
    "QLFit",
    # Clustering
    "merge_windows",
    "find_overlaps",
    "combine_tests",
    "combine_overlaps",
    "get_best_test",
    "get_best_overlaps",
    "mixed_tests",
    "minimal_tests",
    "empirical_fdr",
    "cluster_summits",
    "upweight_summit",
]
