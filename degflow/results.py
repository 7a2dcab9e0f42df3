"""
Ranking and classification of test results.
"""

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from .classes import TopTags

_FWER_METHODS = ('holm', 'hochberg', 'hommel', 'bonferroni')
_FDR_METHODS = ('BH', 'BY')
ADJUST_METHODS = _FDR_METHODS + _FWER_METHODS + ('none',)

_STATSMODELS_NAMES = {
    'BH': 'fdr_bh', 'BY': 'fdr_by', 'holm': 'holm', 'hochberg': 'simes-hochberg',
    'hommel': 'hommel', 'bonferroni': 'bonferroni',
}


def adjust_pvalues(pvalues, method='BH'):
    """Adjust p-values for multiple testing, leaving NaN entries as NaN.

    Undefined p-values do not count towards the number of tests.
    """
    if method == 'fdr':
        method = 'BH'
    if method not in ADJUST_METHODS:
        raise ValueError(f"adjust_method must be one of {ADJUST_METHODS}")
    p = np.asarray(pvalues, dtype=np.float64)
    if method == 'none':
        return p.copy()
    adj = np.full_like(p, np.nan)
    ok = ~np.isnan(p)
    if np.any(ok):
        _, adj[ok], _, _ = multipletests(p[ok], method=_STATSMODELS_NAMES[method])
    return adj


def top_tags(obj, n=10, adjust_method='BH', sort_by='FDR', p_value=1.0):
    """Table of the top-ranked genes.

    Parameters
    ----------
    obj : DGELRT
        Result from glm_lrt() or glm_wald().
    n : int or None
        Number of genes to return; None returns every gene.
    adjust_method : str
        'BH' (default), 'BY', 'holm', 'hochberg', 'hommel', 'bonferroni'
        or 'none'.
    sort_by : str
        'FDR' (adjusted p-value), 'PValue', 'logFC' or 'none'. Sorting is
        stable, and undefined values sort last.
    p_value : float
        Keep only genes with adjusted p-value at or below this cutoff.

    Returns
    -------
    TopTags with 'table', 'adjust.method', 'comparison', 'test' and
    'n.undefined'.
    """
    if obj.get('table') is None:
        raise ValueError("Need to run glm_lrt or glm_wald first")
    if adjust_method == 'fdr':
        adjust_method = 'BH'
    if sort_by == 'p.value':
        sort_by = 'PValue'
    if sort_by not in ('FDR', 'PValue', 'logFC', 'none'):
        raise ValueError("sort_by must be one of 'FDR', 'PValue', 'logFC', 'none'")

    tab = obj['table'].copy()
    raw = tab['PValue'].to_numpy(dtype=np.float64)
    adj = adjust_pvalues(raw, adjust_method)
    if adjust_method in _FWER_METHODS:
        adj_name = 'FWER'
    elif adjust_method in _FDR_METHODS:
        adj_name = 'FDR'
    else:
        adj_name = None

    if sort_by == 'FDR':
        key = adj
    elif sort_by == 'PValue':
        key = raw
    elif sort_by == 'logFC':
        key = -np.abs(tab['logFC'].to_numpy(dtype=np.float64))
    else:
        key = None
    o = np.arange(len(tab)) if key is None else np.argsort(key, kind='stable')

    if adj_name is not None:
        tab[adj_name] = adj
    genes = obj.get('genes')
    if isinstance(genes, pd.DataFrame):
        extra = [c for c in genes.columns if c not in tab.columns]
        tab = pd.concat([genes.loc[tab.index, extra], tab], axis=1)
    tab = tab.iloc[o]

    if p_value < 1:
        tab = tab[adj[o] <= p_value]
    if n is not None:
        tab = tab.iloc[:max(int(n), 0)]

    out = TopTags()
    out['table'] = tab
    out['adjust.method'] = adjust_method
    out['comparison'] = obj.get('comparison', '')
    out['test'] = obj.get('test', 'lrt')
    out['n.undefined'] = int(np.isnan(adj).sum())
    return out


def decide_tests(obj, adjust_method='BH', p_value=0.05, lfc=0):
    """Classify genes as up (1), down (-1) or not significant (0).

    Genes with an undefined p-value are classed as not significant.
    """
    adj = adjust_pvalues(obj['table']['PValue'].to_numpy(dtype=np.float64), adjust_method)
    with np.errstate(invalid='ignore'):
        is_de = (adj < p_value).astype(int)

    logfc_cols = [c for c in obj['table'].columns if c.startswith('logFC')]
    if 'logFC' in obj['table'].columns:
        logfc = obj['table']['logFC'].to_numpy(dtype=np.float64)
        is_de[(is_de == 1) & (logfc < 0)] = -1
        is_de[np.abs(logfc) < lfc] = 0
    elif lfc > 0 and logfc_cols:
        small = np.all(np.abs(obj['table'][logfc_cols].to_numpy()) < lfc, axis=1)
        is_de[small] = 0
    return is_de
