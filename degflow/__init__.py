"""
degflow: differential expression analysis of RNA-seq counts.

Negative binomial GLMs per gene with empirical Bayes dispersion shrinkage.
"""

__version__ = "0.1.0"

# --- Errors ---
from .errors import (
    ShapeMismatchError,
    MissingReferenceLevelError,
    DegenerateGeneError,
    ConvergenceWarning,
)

# --- Classes ---
from .classes import DGEList, DGEGLM, DGELRT, TopTags

# --- DGEList construction & accessors ---
from .dgelist import (
    make_dgelist,
    relevel,
    get_counts,
    get_group_column,
    get_dispersion,
    get_dispersion_type,
    get_offset,
    get_norm_lib_sizes,
)

# --- Design ---
from .design import DesignSpec, model_matrix, coef_index

# --- Normalization ---
from .normalization import calc_norm_factors

# --- Expression ---
from .expression import cpm, ave_log_cpm

# --- Filtering ---
from .filtering import filter_by_expr

# --- Dispersion estimation ---
from .dispersion import estimate_disp, estimate_common_disp, estimate_tagwise_disp
from .dispersion_lowlevel import adjusted_profile_lik_grid, maximize_interpolant

# --- GLM fitting ---
from .glm_fit import glm_fit, mglm_one_group, mglm_one_way
from .glm_levenberg import mglm_levenberg, nbinom_deviance

# --- GLM testing ---
from .glm_test import glm_lrt, glm_wald

# --- Results ---
from .results import top_tags, decide_tests, adjust_pvalues

# --- Degenerate genes ---
from .utils import check_gene, gene_flags

# --- I/O ---
from .io import read_table, read_dataset, write_table

# --- Pipeline ---
from .pipeline import AnalysisConfig, run_analysis

# --- Visualization ---
from .visualization import plot_bcv, plot_md
