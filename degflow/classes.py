"""
Core data classes for degflow.

DGEList (the analysis container), DGEGLM (fitted genewise models), DGELRT
(per-gene test results) and TopTags (ranked result table). Each is a dict
with attribute access; pipeline stages return new objects via ``_updated``
rather than modifying their input.
"""

import numpy as np
import pandas as pd


class _DGEBase(dict):
    """Base class providing dict-like access, subsetting helpers, and display."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        self[name] = value

    def __delattr__(self, name):
        try:
            del self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    @property
    def shape(self):
        if 'counts' in self:
            return self['counts'].shape
        return None

    def __repr__(self):
        cls = type(self).__name__
        components = list(self.keys())
        s = self.shape
        if s is not None:
            return f"{cls} with {s[0]} rows and {s[1]} columns\nComponents: {', '.join(components)}"
        return f"{cls}\nComponents: {', '.join(components)}"

    def _updated(self, changes):
        """Shallow copy with some components replaced.

        Components that are not replaced are shared with the original, which
        is safe because no stage writes into an existing component.
        """
        out = type(self)(self)
        for key, value in changes.items():
            dict.__setitem__(out, key, value)
        return out

    def head(self, n=5):
        """Show first n rows."""
        if 'table' in self:
            return self['table'].head(n)
        if 'counts' in self:
            return self.to_dataframe().head(n)
        return None


def _get_rownames(obj):
    """Gene identifiers from genes or the stored gene ids."""
    if obj.get('genes') is not None:
        return list(obj['genes'].index)
    if obj.get('gene.ids') is not None:
        return list(obj['gene.ids'])
    return None


def _get_colnames(obj):
    """Sample identifiers from the samples frame."""
    if obj.get('samples') is not None:
        return list(obj['samples'].index)
    return None


def _subset_matrix_or_df(x, i=None, j=None):
    """Subset a matrix, DataFrame, or vector by row (i) and/or column (j)."""
    if x is None:
        return None
    if isinstance(x, pd.DataFrame):
        if i is not None and j is not None:
            return x.iloc[i, j]
        elif i is not None:
            return x.iloc[i]
        elif j is not None:
            return x.iloc[:, j]
        return x
    if isinstance(x, np.ndarray):
        if x.ndim == 2:
            if i is not None:
                x = x[i] if isinstance(i, slice) else x[np.atleast_1d(i)]
            if j is not None:
                x = x[:, j] if isinstance(j, slice) else x[:, np.atleast_1d(j)]
            return x
        if x.ndim == 1 and i is not None:
            return x[i] if isinstance(i, slice) else x[np.atleast_1d(i)]
        return x
    return x


def _resolve_index(idx, names):
    """Resolve index to integer array. Supports bool, int, str, slice."""
    if idx is None:
        return None
    if isinstance(idx, slice):
        return idx
    idx = np.atleast_1d(idx)
    if idx.dtype == bool:
        return np.where(idx)[0]
    if idx.dtype.kind in ('U', 'S', 'O') and names is not None:
        lookup = {name: k for k, name in enumerate(names)}
        result = []
        for name in idx:
            if name not in lookup:
                raise KeyError(f"Name '{name}' not found")
            result.append(lookup[name])
        return np.array(result, dtype=int)
    return idx.astype(int)


def _split_key(key):
    if not isinstance(key, tuple) or len(key) != 2:
        raise IndexError("Two subscripts required")
    return key


class DGEList(_DGEBase):
    """Digital gene expression container.

    Attributes
    ----------
    counts : ndarray
        Read-only matrix of counts (genes x samples).
    samples : DataFrame
        Sample information indexed by sample id, with columns group,
        lib.size, norm.factors and any further covariates.
    genes : DataFrame or None
        Gene annotation indexed by gene id.
    gene.ids : list
        Gene identifiers (always present).
    reference : dict
        Reference level per factor.
    common.dispersion : float or None
    tagwise.dispersion : ndarray or None
    dispersion.flag : ndarray or None
    AveLogCPM : ndarray or None
    """

    _IJ = {'counts'}
    _IX = {'genes'}
    _JX = {'samples'}
    _I = {'AveLogCPM', 'trended.dispersion', 'tagwise.dispersion', 'dispersion.flag'}

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        i, j = _split_key(key)

        i_idx = _resolve_index(i, _get_rownames(self))
        j_idx = _resolve_index(j, _get_colnames(self))

        out = type(self)(self)
        changes = {}
        for k in self._IJ | self._IX | self._I:
            if self.get(k) is not None:
                changes[k] = _subset_matrix_or_df(self[k], i_idx,
                                                  j_idx if k in self._IJ else None)
        if self.get('gene.ids') is not None and i_idx is not None:
            changes['gene.ids'] = list(np.asarray(self['gene.ids'], dtype=object)[i_idx])
        if self.get('samples') is not None and j_idx is not None:
            sam = _subset_matrix_or_df(self['samples'], i=j_idx).copy()
            for col in sam.columns:
                if isinstance(sam[col].dtype, pd.CategoricalDtype):
                    sam[col] = sam[col].cat.remove_unused_categories()
            changes['samples'] = sam
        if 'counts' in changes:
            counts = np.array(changes['counts'], dtype=np.float64)
            counts.setflags(write=False)
            changes['counts'] = counts
        # Dispersions depend on the whole sample set
        if j_idx is not None:
            for k in ('common.dispersion', 'tagwise.dispersion', 'trended.dispersion',
                      'dispersion.flag', 'AveLogCPM'):
                changes[k] = None
        for k, v in changes.items():
            dict.__setitem__(out, k, v)
        return out

    @property
    def nrow(self):
        if 'counts' in self:
            return self['counts'].shape[0]
        return 0

    @property
    def ncol(self):
        if 'counts' in self:
            return self['counts'].shape[1]
        return 0

    def __len__(self):
        return self.nrow

    def to_dataframe(self):
        """Counts as a DataFrame labelled by gene and sample ids."""
        return pd.DataFrame(
            self['counts'],
            index=_get_rownames(self),
            columns=_get_colnames(self)
        )


class DGEGLM(_DGEBase):
    """Fitted genewise negative binomial GLMs.

    Attributes
    ----------
    coefficients : ndarray
        Matrix of coefficients (natural log scale, prior-count shrunk).
    unshrunk.coefficients : ndarray
    se : ndarray
        Standard errors of the unshrunk coefficients.
    fitted.values : ndarray
    deviance : ndarray
    df.residual : ndarray
    converged : ndarray of bool
    flag : ndarray of str
        Empty string for well-behaved genes, otherwise the reason.
    cooks : ndarray
        Per-sample Cook's distances.
    design : ndarray
    coef.names : list of str
    dispersion : ndarray
    """

    @property
    def shape(self):
        if 'coefficients' in self:
            return self['coefficients'].shape
        return None

    @property
    def nrow(self):
        if 'coefficients' in self:
            return self['coefficients'].shape[0]
        return 0


class DGELRT(_DGEBase):
    """Per-gene test results.

    Attributes
    ----------
    table : DataFrame
        logFC, logCPM, LR (or SE and z), PValue and flag, indexed by gene id.
    comparison : str
        Name of the coefficient tested.
    test : str
        'lrt' or 'wald'.
    """

    def __repr__(self):
        out = ""
        if 'comparison' in self:
            out += f"Coefficient: {self['comparison']}\n"
        if 'table' in self:
            out += str(self['table'])
        return out

    @property
    def shape(self):
        if 'table' in self:
            return self['table'].shape
        return None


class TopTags(_DGEBase):
    """Top differentially expressed genes.

    Attributes
    ----------
    table : DataFrame
        Table sorted by adjusted p-value, undefined rows last.
    adjust.method : str
    comparison : str
    test : str
    n.undefined : int
        Number of rows with an undefined adjusted p-value in the full table.
    """

    def __repr__(self):
        out = f"Coefficient: {self.get('comparison', '')}\n"
        if 'table' in self:
            out += str(self['table'])
        return out

    def __len__(self):
        if 'table' in self:
            return len(self['table'])
        return 0

    @property
    def shape(self):
        if 'table' in self:
            return self['table'].shape
        return None
