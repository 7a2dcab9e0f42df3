"""
DGEList construction, releveling, and accessors.

The container is assembled atomically from counts, sample metadata and
(optionally) gene metadata. Sample identifiers must agree with the count
columns in both content and order.
"""

import logging

import numpy as np
import pandas as pd
import warnings

from .classes import DGEList
from .errors import ShapeMismatchError, MissingReferenceLevelError
from .utils import drop_empty_levels

logger = logging.getLogger(__name__)


def _labelled_ids(index):
    """String identifiers from a pandas index, or None for a default RangeIndex."""
    if isinstance(index, pd.RangeIndex):
        return None
    return [str(i) for i in index]


def _describe_mismatch(expected, found, what='sample'):
    expected_set, found_set = set(expected), set(found)
    missing = [s for s in expected if s not in found_set]
    extra = [s for s in found if s not in expected_set]
    parts = []
    if missing:
        parts.append(f"missing from metadata: {missing[:5]}")
    if extra:
        parts.append(f"not in counts: {extra[:5]}")
    if not parts:
        first = next(k for k, (a, b) in enumerate(zip(expected, found)) if a != b)
        parts.append(f"same identifiers in a different order (first difference at "
                     f"position {first}: '{expected[first]}' vs '{found[first]}')")
    return f"{what} identifiers disagree between counts and metadata; " + "; ".join(parts)


def set_reference_level(x, reference, name='group'):
    """Return a Categorical with ``reference`` as its first (baseline) level.

    Raises
    ------
    MissingReferenceLevelError
        If ``reference`` is not one of the levels of ``x``.
    """
    cat = drop_empty_levels(x)
    levels = list(cat.categories)
    matched = [lv for lv in levels if lv == reference or str(lv) == str(reference)]
    if not matched:
        raise MissingReferenceLevelError(
            f"reference level '{reference}' is not a level of '{name}' (levels: {levels})")
    ref = matched[0]
    return cat.reorder_categories([ref] + [lv for lv in levels if lv != ref])


def make_dgelist(counts, samples=None, genes=None, group=None, reference=None,
                 lib_size=None, norm_factors=None, group_column='group',
                 remove_zeros=False):
    """Construct a DGEList from counts, sample metadata and gene metadata.

    Parameters
    ----------
    counts : array-like or DataFrame
        Matrix of counts (genes x samples). A DataFrame supplies gene ids
        (index) and sample ids (columns).
    samples : DataFrame, optional
        One row per sample. A labelled index must match the count columns
        exactly, in the same order.
    genes : DataFrame, optional
        One row per gene. A labelled index must match the count rows.
    group : array-like, optional
        Group memberships. Defaults to ``samples[group_column]``.
    reference : str, optional
        Baseline level of the group factor.
    lib_size : array-like, optional
        Library sizes. Defaults to column sums.
    norm_factors : array-like, optional
        Normalization factors. Defaults to all ones.
    group_column : str
        Column of ``samples`` holding the group factor.
    remove_zeros : bool
        Whether to remove rows with all zero counts.

    Returns
    -------
    DGEList

    Raises
    ------
    ShapeMismatchError
        If sample or gene metadata do not line up with the counts.
    MissingReferenceLevelError
        If ``reference`` is not a level of the group factor.
    """
    gene_ids = None
    sample_ids = None
    if isinstance(counts, pd.DataFrame):
        numeric_mask = counts.dtypes.apply(lambda dt: np.issubdtype(dt, np.number))
        if not numeric_mask.all():
            raise ValueError(f"non-numeric columns in counts: {list(counts.columns[~numeric_mask])}")
        gene_ids = _labelled_ids(counts.index)
        sample_ids = [str(c) for c in counts.columns]
        counts = counts.to_numpy(dtype=np.float64, copy=True)
    else:
        counts = np.array(counts, dtype=np.float64)
    if counts.ndim == 1:
        counts = counts.reshape(-1, 1)

    # Validate counts
    if counts.size == 0:
        raise ValueError("'counts' must contain at least one value")
    if np.any(np.isnan(counts)):
        raise ValueError("NA counts not allowed")
    if np.min(counts) < 0:
        raise ValueError("Negative counts not allowed")
    if not np.all(np.isfinite(counts)):
        raise ValueError("Infinite counts not allowed")

    ntags, nlib = counts.shape

    # Sample metadata
    if samples is not None:
        samples = pd.DataFrame(samples).copy()
        if len(samples) != nlib:
            raise ShapeMismatchError(
                f"sample metadata has {len(samples)} rows but counts have {nlib} columns")
        meta_ids = _labelled_ids(samples.index)
        if meta_ids is not None:
            if sample_ids is None:
                sample_ids = meta_ids
            elif meta_ids != sample_ids:
                raise ShapeMismatchError(_describe_mismatch(sample_ids, meta_ids))
    if sample_ids is None:
        sample_ids = [f"Sample{i+1}" for i in range(nlib)]
    if len(set(sample_ids)) != nlib:
        dup = pd.Index(sample_ids)[pd.Index(sample_ids).duplicated()].tolist()
        raise ShapeMismatchError(f"duplicated sample identifiers: {dup[:5]}")

    # Gene metadata
    if genes is not None:
        genes = pd.DataFrame(genes).copy()
        if len(genes) != ntags:
            raise ShapeMismatchError(
                f"gene metadata has {len(genes)} rows but counts have {ntags} rows")
        meta_ids = _labelled_ids(genes.index)
        if meta_ids is not None:
            if gene_ids is None:
                gene_ids = meta_ids
            elif meta_ids != gene_ids:
                raise ShapeMismatchError(_describe_mismatch(gene_ids, meta_ids, what='gene'))
    if gene_ids is None:
        gene_ids = [str(i+1) for i in range(ntags)]
    if len(set(gene_ids)) != ntags:
        dup = pd.Index(gene_ids)[pd.Index(gene_ids).duplicated()].tolist()
        raise ValueError(f"duplicated gene identifiers: {dup[:5]}")

    # Library sizes
    if lib_size is None:
        lib_size = counts.sum(axis=0)
        if np.min(lib_size) <= 0:
            warnings.warn("At least one library size is zero")
    else:
        lib_size = np.asarray(lib_size, dtype=np.float64)
        if len(lib_size) != nlib:
            raise ValueError("length of 'lib_size' must equal number of samples")
        if np.any(np.isnan(lib_size)):
            raise ValueError("NA library sizes not allowed")
        if np.any(lib_size < 0):
            raise ValueError("negative library sizes not allowed")
        if np.any((lib_size == 0) & (counts.sum(axis=0) > 0)):
            raise ValueError("library size set to zero but counts for that sample are nonzero")

    # Normalization factors
    if norm_factors is None:
        norm_factors = np.ones(nlib)
    else:
        norm_factors = np.asarray(norm_factors, dtype=np.float64)
        if len(norm_factors) != nlib:
            raise ValueError("Length of 'norm_factors' must equal number of columns in 'counts'")
        if np.any(np.isnan(norm_factors)):
            raise ValueError("NA norm factors not allowed")
        if np.any(norm_factors <= 0):
            raise ValueError("norm factors must be positive")
        if abs(np.sum(np.log(norm_factors))) > 1e-6:
            warnings.warn("norm factors don't multiply to 1")

    # Group
    if group is None and samples is not None and group_column in samples.columns:
        group = samples[group_column].to_numpy()
    if group is None:
        group = pd.Categorical([1] * nlib)
    else:
        if len(group) != nlib:
            raise ShapeMismatchError("Length of 'group' must equal number of columns in 'counts'")
        group = drop_empty_levels(pd.Categorical(np.asarray(group)))

    ref_map = {}
    if reference is not None:
        group = set_reference_level(group, reference, name=group_column)
        ref_map = {group_column: group.categories[0]}

    sam = pd.DataFrame({
        'group': group,
        'lib.size': lib_size,
        'norm.factors': norm_factors,
    }, index=sample_ids)
    # A user 'group' column stays a covariate when another column is tested
    if samples is not None:
        for col in samples.columns:
            if col == group_column:
                sam[col] = group
            else:
                sam[col] = samples[col].to_numpy()

    if genes is not None:
        genes.index = gene_ids

    if remove_zeros:
        all_zeros = np.sum(counts > 0, axis=1) == 0
        if np.any(all_zeros):
            keep = ~all_zeros
            counts = counts[keep]
            gene_ids = [g for g, k in zip(gene_ids, keep) if k]
            if genes is not None:
                genes = genes.iloc[keep]
            logger.info("Removing %d rows with all zero counts", int(np.sum(all_zeros)))

    counts.setflags(write=False)

    x = DGEList()
    x['counts'] = counts
    x['samples'] = sam
    x['genes'] = genes
    x['gene.ids'] = list(gene_ids)
    x['reference'] = ref_map
    x['group.column'] = group_column if group_column in sam.columns else 'group'
    return x


def relevel(y, reference, factor=None):
    """Return a new DGEList whose ``factor`` uses ``reference`` as baseline.

    ``factor`` defaults to the group factor.

    Any stored design is dropped because its coding no longer applies.
    """
    sam = y['samples'].copy()
    if factor is None:
        factor = get_group_column(y)
    if factor not in sam.columns:
        raise ValueError(f"factor '{factor}' not found in sample metadata")
    sam[factor] = set_reference_level(sam[factor], reference, name=factor)
    ref_map = dict(y.get('reference') or {})
    ref_map[factor] = sam[factor].cat.categories[0]
    return y._updated({'samples': sam, 'reference': ref_map, 'design': None})


def get_group_column(y):
    """Name of the sample column holding the group factor."""
    return y.get('group.column') or 'group'


def get_counts(y):
    """Extract count matrix from DGEList."""
    return np.asarray(y['counts'])


def get_dispersion(y):
    """Most detailed dispersion available: tagwise > trended > common > None."""
    if y.get('tagwise.dispersion') is not None:
        return np.asarray(y['tagwise.dispersion'])
    if y.get('trended.dispersion') is not None:
        return np.asarray(y['trended.dispersion'])
    if y.get('common.dispersion') is not None:
        return np.float64(y['common.dispersion'])
    return None


def get_dispersion_type(y):
    """Type of the most detailed dispersion in a DGEList."""
    for kind in ('tagwise', 'trended', 'common'):
        if y.get(f'{kind}.dispersion') is not None:
            return kind
    return None


def get_offset(y):
    """Log effective library sizes, log(lib.size * norm.factors)."""
    lib_size = get_norm_lib_sizes(y)
    if np.any(~np.isfinite(lib_size)) or np.any(lib_size <= 0):
        raise ValueError("library sizes must be positive finite values")
    return np.log(lib_size)


def get_norm_lib_sizes(y, log=False):
    """Effective (normalized) library sizes."""
    els = y['samples']['lib.size'].to_numpy(dtype=np.float64) * \
        y['samples']['norm.factors'].to_numpy(dtype=np.float64)
    if log:
        return np.log(els)
    return els
