"""
End-to-end differential expression analysis.

run_analysis() chains the stages: assemble the DGEList, build the design,
optionally filter, normalize, estimate dispersions, fit, test and rank.
Structural input problems are raised before any modelling starts.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Optional, Tuple, Union

import numpy as np

from .design import DesignSpec, model_matrix
from .dgelist import make_dgelist
from .dispersion import TRENDS, estimate_disp
from .filtering import filter_by_expr
from .glm_fit import glm_fit
from .glm_test import glm_lrt, glm_wald
from .normalization import NORM_METHODS, calc_norm_factors
from .results import ADJUST_METHODS, top_tags

logger = logging.getLogger(__name__)

TESTS = ('lrt', 'wald')


@dataclass
class AnalysisConfig:
    """Settings for run_analysis()."""

    reference: Optional[str] = None
    design: Union[Tuple[str, ...], str] = ('group',)
    coef: Optional[Union[int, str]] = None
    top_n: int = 10
    norm_method: str = 'TMM'
    test: str = 'lrt'
    adjust_method: str = 'BH'
    prior_df: float = 10.0
    prior_count: float = 0.125
    trend: str = 'none'
    min_row_sum: float = 5
    filter: bool = False
    cooks_cutoff: bool = True
    n_workers: int = 1
    extra_references: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, mapping):
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ValueError(f"unknown configuration keys: {unknown}")
        return cls(**mapping)

    def validate(self):
        if self.test not in TESTS:
            raise ValueError(f"test must be one of {TESTS}")
        if self.norm_method not in NORM_METHODS:
            raise ValueError(f"norm_method must be one of {NORM_METHODS}")
        if self.adjust_method not in ADJUST_METHODS:
            raise ValueError(f"adjust_method must be one of {ADJUST_METHODS}")
        if self.trend not in TRENDS:
            raise ValueError(f"trend must be one of {TRENDS}")
        if self.top_n is not None and self.top_n < 1:
            raise ValueError("top_n must be at least 1")
        if self.prior_df < 0:
            raise ValueError("prior_df must be non-negative")
        if self.prior_count < 0:
            raise ValueError("prior_count must be non-negative")
        if self.n_workers == 0:
            raise ValueError("n_workers must be non-zero")
        return self

    def design_spec(self):
        """DesignSpec with the configured reference level for the tested covariate."""
        if isinstance(self.design, str):
            spec = DesignSpec.from_formula(self.design)
        else:
            spec = DesignSpec(tuple(self.design))
        refs = dict(self.extra_references)
        if self.reference is not None:
            refs[spec.tested] = self.reference
        return spec.with_reference(**refs)


def run_analysis(counts, samples, genes=None, config=None, **overrides):
    """Run the full analysis and return the top genes.

    Parameters
    ----------
    counts : DataFrame or array-like
        Counts (genes x samples).
    samples : DataFrame
        Sample metadata; its index must match the count columns.
    genes : DataFrame, optional
        Gene annotation.
    config : AnalysisConfig, optional
        Analysis settings; keyword ``overrides`` replace individual fields.

    Returns
    -------
    (TopTags, DGELRT)
        The ranked top ``config.top_n`` genes and the full per-gene results.

    Raises
    ------
    ShapeMismatchError
        If the metadata does not line up with the counts.
    MissingReferenceLevelError
        If the tested factor has no valid reference level.
    """
    config = config or AnalysisConfig()
    if overrides:
        config = replace(config, **overrides)
    config.validate()
    spec = config.design_spec()

    tested = spec.tested
    group_column = tested if samples is not None and tested in samples.columns else 'group'
    y = make_dgelist(counts, samples=samples, genes=genes, group_column=group_column)
    logger.info("Assembled %d genes x %d samples", y.nrow, y.ncol)

    design = model_matrix(spec, y['samples'])
    y = y._updated({'reference': dict(spec.reference)})
    logger.info("Design %s with coefficients %s", spec.formula, list(design.columns))

    if config.filter:
        keep = filter_by_expr(y, design=design.to_numpy())
        y = y[keep, :]
        logger.info("Kept %d of %d genes after expression filtering",
                    int(keep.sum()), len(keep))

    y = calc_norm_factors(y, method=config.norm_method)
    logger.info("%s normalization factors: %s", config.norm_method,
                np.round(y['samples']['norm.factors'].to_numpy(), 4).tolist())

    y = estimate_disp(y, design=design, prior_df=config.prior_df, trend=config.trend,
                      min_row_sum=config.min_row_sum, n_workers=config.n_workers)
    logger.info("Common dispersion %.4f (BCV %.4f)", y['common.dispersion'],
                np.sqrt(y['common.dispersion']))

    fit = glm_fit(y, design=design, prior_count=config.prior_count,
                  n_workers=config.n_workers)
    test = glm_lrt if config.test == 'lrt' else glm_wald
    res = test(fit, coef=config.coef, cooks_cutoff=config.cooks_cutoff)

    flags = res['table']['flag']
    flagged = flags[flags != ''].value_counts()
    if len(flagged):
        logger.warning("Genes with flags: %s", flagged.to_dict())

    top = top_tags(res, n=config.top_n, adjust_method=config.adjust_method)
    logger.info("Tested %s by %s: %d genes, %d undefined", res['comparison'],
                config.test.upper(), len(res['table']), top['n.undefined'])
    return top, res
