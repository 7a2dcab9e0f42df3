"""
Design specifications and design matrices.

A DesignSpec lists the sample covariates that explain count variation; the
last one is the covariate under test. Categorical covariates are treatment
coded against a reference level, which must be given explicitly for the
tested factor.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
import patsy

from .errors import MissingReferenceLevelError


@dataclass(frozen=True)
class DesignSpec:
    """Covariates explaining the counts, plus their reference levels.

    Attributes
    ----------
    covariates : tuple of str
        Sample metadata columns, in declaration order.
    reference : tuple of (str, level) pairs
        Reference (baseline) level per categorical covariate, sorted by
        covariate name. A dict is accepted and converted, so specs hash.
    intercept : bool
        Include an intercept column.
    """

    covariates: tuple = ('group',)
    reference: tuple = ()
    intercept: bool = True

    def __post_init__(self):
        covs = self.covariates
        covs = (covs,) if isinstance(covs, str) else tuple(covs)
        if not covs:
            raise ValueError("design needs at least one covariate")
        for cov in covs:
            if not str(cov).isidentifier():
                raise ValueError(f"covariate name '{cov}' is not a valid identifier")
        object.__setattr__(self, 'covariates', covs)
        ref = dict(self.reference or ())
        pairs = sorted(ref.items(), key=lambda kv: str(kv[0]))
        object.__setattr__(self, 'reference', tuple(pairs))

    @property
    def tested(self):
        """The covariate whose effect is tested."""
        return self.covariates[-1]

    @property
    def formula(self):
        rhs = ' + '.join(self.covariates)
        return f"~ {rhs}" if self.intercept else f"~ 0 + {rhs}"

    @classmethod
    def from_formula(cls, formula, reference=None):
        """Parse an additive formula such as ``'~ batch + group'``."""
        rhs = formula.split('~', 1)[-1]
        covs = []
        intercept = True
        for term in (t.strip() for t in rhs.split('+')):
            if not term or term == '1':
                continue
            if term in ('0', '-1'):
                intercept = False
                continue
            if not term.isidentifier():
                raise ValueError(
                    f"unsupported term '{term}' in design formula; "
                    "only additive covariate names are allowed")
            covs.append(term)
        return cls(tuple(covs), reference or {}, intercept)

    def with_reference(self, **levels):
        ref = dict(self.reference)
        ref.update(levels)
        return DesignSpec(self.covariates, ref, self.intercept)


def _is_numeric(col):
    if isinstance(col.dtype, pd.CategoricalDtype) or col.dtype == bool:
        return False
    return pd.api.types.is_numeric_dtype(col)


def _as_factor(col, reference, name, tested):
    from .dgelist import set_reference_level
    cat = pd.Categorical(col).remove_unused_categories()
    levels = list(cat.categories)
    if tested and len(levels) < 2:
        raise ValueError(f"factor '{name}' under test needs at least two levels, got {levels}")
    if reference is None:
        if tested:
            raise MissingReferenceLevelError(
                f"reference level for factor '{name}' must be set explicitly "
                f"(levels: {levels})")
        return cat
    return set_reference_level(cat, reference, name=name)


def model_matrix(design, samples, reference=None):
    """Build a design matrix from sample metadata.

    Parameters
    ----------
    design : DesignSpec or str
        Design specification, or an additive formula string.
    samples : DataFrame
        Sample metadata, one row per sample.
    reference : dict, optional
        Reference levels to use where ``design`` does not give one
        (e.g. the ``reference`` stored on a DGEList).

    Returns
    -------
    DataFrame
        Design matrix (samples x coefficients) with patsy column names such
        as ``Intercept`` and ``group[T.trt]``.

    Raises
    ------
    MissingReferenceLevelError
        If the tested covariate is categorical and has no reference level,
        or the given level does not exist.
    """
    if isinstance(design, str):
        design = DesignSpec.from_formula(design)
    refs = dict(reference or {})
    refs.update(design.reference)

    samples = pd.DataFrame(samples)
    data = {}
    for cov in design.covariates:
        if cov not in samples.columns:
            raise ValueError(f"covariate '{cov}' not found in sample metadata")
        col = samples[cov]
        if _is_numeric(col):
            data[cov] = col.to_numpy(dtype=np.float64)
        else:
            data[cov] = _as_factor(col, refs.get(cov), cov, tested=(cov == design.tested))
    frame = pd.DataFrame(data, index=samples.index)

    dm = patsy.dmatrix(design.formula, frame, return_type='dataframe', NA_action='raise')
    dm.index = samples.index
    return dm.astype(np.float64)


def resolve_design(design, y=None):
    """Resolve a design argument to a DataFrame (or None).

    Accepts a DesignSpec, a formula string, a DataFrame or an array. For a
    DGEList with no design given, the stored design is used, falling back to
    ``~ group`` when the group factor has more than one level.
    """
    is_dge = isinstance(y, dict) and y.get('samples') is not None
    if design is None and is_dge:
        design = y.get('design')
        if design is None:
            from .dgelist import get_group_column
            column = get_group_column(y)
            group = pd.Categorical(y['samples'][column]).remove_unused_categories()
            if len(group.categories) > 1:
                design = DesignSpec((column,))
    if design is None:
        return None
    if isinstance(design, (str, DesignSpec)):
        if not is_dge:
            raise ValueError(
                "Formula design requires a DGEList with sample metadata. "
                "Pass a DGEList or use model_matrix() explicitly.")
        return model_matrix(design, y['samples'], reference=y.get('reference'))
    if isinstance(design, pd.DataFrame):
        return design.astype(np.float64)
    design = np.asarray(design, dtype=np.float64)
    if design.ndim == 1:
        design = design.reshape(-1, 1)
    return pd.DataFrame(design, columns=[f"coef{i}" for i in range(design.shape[1])])


def coef_index(coef_names, coef=None):
    """Column position of a coefficient.

    ``coef`` may be a position (negative counts from the end), a full
    column name, a factor level (``'trt'`` matches ``group[T.trt]``) or a
    covariate name with a single column. Defaults to the last column.
    """
    names = [str(n) for n in coef_names]
    n = len(names)
    if coef is None:
        return n - 1
    if isinstance(coef, (int, np.integer)):
        k = int(coef) + n if coef < 0 else int(coef)
        if not 0 <= k < n:
            raise ValueError(f"coefficient {coef} out of range for {n} columns")
        return k
    coef = str(coef)
    if coef in names:
        return names.index(coef)
    matches = [k for k, name in enumerate(names)
               if name.endswith(f"[T.{coef}]") or name.endswith(f"[{coef}]")]
    if not matches:
        matches = [k for k, name in enumerate(names) if name.startswith(f"{coef}[")]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise ValueError(f"Coefficient '{coef}' not found in {names}")
    raise ValueError(f"Coefficient '{coef}' is ambiguous: {[names[k] for k in matches]}")
