"""
Library-size normalization factors.

Supported methods are TMM (weighted trimmed mean of M-values), TMMwsp
(TMM with singleton pairing), RLE (relative log expression),
upperquartile and none. Factors are always rescaled so that their
product is one.
"""

import logging
import warnings

import numpy as np
from scipy.stats import rankdata

logger = logging.getLogger(__name__)

NORM_METHODS = ('TMM', 'TMMwsp', 'RLE', 'upperquartile', 'none')


def calc_norm_factors(y, lib_size=None, method='TMM', ref_column=None,
                      logratio_trim=0.3, sum_trim=0.05, do_weighting=True,
                      a_cutoff=-1e10, p=0.75):
    """Calculate normalization factors.

    Parameters
    ----------
    y : array-like or DGEList
        Count matrix (genes x samples), or DGEList.
    lib_size : array-like, optional
        Library sizes. Defaults to column sums.
    method : str
        One of 'TMM', 'TMMwsp', 'RLE', 'upperquartile', 'none'.
    ref_column : int, optional
        Reference sample for TMM/TMMwsp.
    logratio_trim : float
        Fraction of M-values trimmed from each end (TMM).
    sum_trim : float
        Fraction of A-values trimmed from each end (TMM).
    do_weighting : bool
        Use inverse-variance weights in TMM.
    a_cutoff : float
        Minimum A-value for a gene to be used (TMM).
    p : float
        Quantile for the upper-quartile method.

    Returns
    -------
    DGEList with updated ``norm.factors`` (if input is a DGEList), otherwise
    ndarray of factors whose product is one.
    """
    if isinstance(y, dict) and 'counts' in y:
        nf = _norm_factors(
            y['counts'], lib_size=y['samples']['lib.size'].to_numpy(dtype=np.float64),
            method=method, ref_column=ref_column, logratio_trim=logratio_trim,
            sum_trim=sum_trim, do_weighting=do_weighting, a_cutoff=a_cutoff, p=p)
        sam = y['samples'].copy()
        sam['norm.factors'] = nf
        return y._updated({'samples': sam})

    return _norm_factors(y, lib_size=lib_size, method=method, ref_column=ref_column,
                         logratio_trim=logratio_trim, sum_trim=sum_trim,
                         do_weighting=do_weighting, a_cutoff=a_cutoff, p=p)


def _norm_factors(x, lib_size=None, method='TMM', ref_column=None,
                  logratio_trim=0.3, sum_trim=0.05, do_weighting=True,
                  a_cutoff=-1e10, p=0.75):
    x = np.asarray(x, dtype=np.float64)
    if np.any(np.isnan(x)):
        raise ValueError("NA counts not permitted")
    if method not in NORM_METHODS:
        raise ValueError(f"method must be one of {NORM_METHODS}")
    nsamples = x.shape[1]

    if lib_size is None:
        lib_size = x.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=np.float64)
    if len(lib_size) != nsamples:
        raise ValueError("length of 'lib_size' must equal number of samples")

    # Genes with no reads carry no information about composition
    x = x[np.any(x > 0, axis=1)]
    if x.shape[0] == 0 or nsamples == 1:
        method = 'none'

    if method == 'TMM':
        if ref_column is None:
            uq = _upper_quantile_factors(x, lib_size, 0.75)
            if np.median(uq) < 1e-20:
                ref_column = int(np.argmax(np.sum(np.sqrt(x), axis=0)))
            else:
                ref_column = int(np.argmin(np.abs(uq - np.mean(uq))))
        f = np.array([
            _tmm_factor(x[:, j], x[:, ref_column], lib_size[j], lib_size[ref_column],
                        logratio_trim, sum_trim, do_weighting, a_cutoff)
            for j in range(nsamples)])
    elif method == 'TMMwsp':
        if ref_column is None:
            ref_column = int(np.argmax(np.sum(np.sqrt(x), axis=0)))
        f = np.array([
            _tmmwsp_factor(x[:, j], x[:, ref_column], lib_size[j], lib_size[ref_column],
                           logratio_trim, sum_trim, do_weighting)
            for j in range(nsamples)])
    elif method == 'RLE':
        f = _rle_factors(x) / lib_size
    elif method == 'upperquartile':
        f = _upper_quantile_factors(x, lib_size, p)
    else:
        f = np.ones(nsamples)

    if np.any(~np.isfinite(f)) or np.any(f <= 0):
        warnings.warn(f"{method} produced non-positive or undefined factors; "
                      "using factors of one")
        f = np.ones(nsamples)

    f = f / np.exp(np.mean(np.log(f)))
    logger.debug("%s normalization factors: %s", method, np.round(f, 4))
    return f


def _rle_factors(x):
    """Median ratio of each library to the geometric mean over libraries."""
    with np.errstate(divide='ignore'):
        gm = np.exp(np.mean(np.log(x), axis=1))
    pos = gm > 0
    return np.median(x[pos] / gm[pos, None], axis=0)


def _upper_quantile_factors(x, lib_size, p=0.75):
    f = np.quantile(x, p, axis=0)
    if np.min(f) == 0:
        warnings.warn("One or more quantiles are zero")
    return f / lib_size


def _tmm_factor(obs, ref, n_obs, n_ref, logratio_trim=0.3, sum_trim=0.05,
                do_weighting=True, a_cutoff=-1e10):
    """TMM scaling factor of one library relative to a reference."""
    with np.errstate(divide='ignore', invalid='ignore'):
        log_obs = np.log2(obs / n_obs)
        log_ref = np.log2(ref / n_ref)
        m = log_obs - log_ref
        a = (log_obs + log_ref) / 2
        v = (n_obs - obs) / n_obs / obs + (n_ref - ref) / n_ref / ref

    ok = np.isfinite(m) & np.isfinite(a) & (a > a_cutoff)
    m, a, v = m[ok], a[ok], v[ok]
    if len(m) == 0 or np.max(np.abs(m)) < 1e-6:
        return 1.0

    n = len(m)
    lo_m = int(np.floor(n * logratio_trim)) + 1
    lo_a = int(np.floor(n * sum_trim)) + 1
    rank_m = rankdata(m)
    rank_a = rankdata(a)
    keep = ((rank_m >= lo_m) & (rank_m <= n + 1 - lo_m) &
            (rank_a >= lo_a) & (rank_a <= n + 1 - lo_a))

    if do_weighting and np.isfinite(np.sum(1 / v[keep])) and np.sum(1 / v[keep]) > 0:
        mean_m = np.sum(m[keep] / v[keep]) / np.sum(1 / v[keep])
    else:
        mean_m = np.mean(m[keep]) if np.any(keep) else 0.0
    if np.isnan(mean_m):
        mean_m = 0.0
    return 2 ** mean_m


def _tmmwsp_factor(obs, ref, n_obs, n_ref, logratio_trim=0.3, sum_trim=0.05,
                   do_weighting=True):
    """TMM with singleton pairing: genes expressed in only one library are paired."""
    pos_obs = obs > 1e-14
    pos_ref = ref > 1e-14
    both = pos_obs & pos_ref
    only_obs = pos_obs & ~pos_ref
    only_ref = pos_ref & ~pos_obs

    n_pairs = min(only_obs.sum(), only_ref.sum())
    single = only_obs | only_ref
    obs_s = np.sort(obs[single])[::-1][:n_pairs]
    ref_s = np.sort(ref[single])[::-1][:n_pairs]
    obs = np.concatenate([obs[both], obs_s])
    ref = np.concatenate([ref[both], ref_s])

    n = len(obs)
    if n == 0:
        return 1.0

    p_obs = obs / n_obs
    p_ref = ref / n_ref
    m = np.log2(p_obs / p_ref)
    a = 0.5 * np.log2(p_obs * p_ref)
    if np.max(np.abs(m)) < 1e-6:
        return 1.0

    # Ties in M are broken by the shrunk log-ratio
    m_shrunk = np.log2(((obs + 0.5) / (n_obs + 0.5)) / ((ref + 0.5) / (n_ref + 0.5)))
    order_m = np.lexsort((m_shrunk, m))
    order_a = np.argsort(a, kind='stable')
    lo_m = int(n * logratio_trim) + 1
    lo_a = int(n * sum_trim) + 1
    keep = np.zeros(n, dtype=bool)
    keep[order_m[lo_m:n - lo_m]] = True
    keep_a = np.zeros(n, dtype=bool)
    keep_a[order_a[lo_a:n - lo_a]] = True
    keep &= keep_a
    if not np.any(keep):
        return 1.0

    if do_weighting:
        v = (1 - p_obs[keep]) / p_obs[keep] / n_obs + (1 - p_ref[keep]) / p_ref[keep] / n_ref
        w = (1 + 1e-6) / (v + 1e-6)
        return 2 ** (np.sum(w * m[keep]) / np.sum(w))
    return 2 ** np.mean(m[keep])
