"""
Diagnostic plots: biological coefficient of variation and mean-difference.
"""

import numpy as np


def plot_bcv(y, xlab='Average log CPM', ylab='Biological coefficient of variation',
             s=2, col_common='red', col_trend='blue', col_tagwise='black', ax=None):
    """Plot genewise BCV (square root of dispersion) against abundance.

    Parameters
    ----------
    y : DGEList
        Must have dispersion estimates.
    ax : matplotlib Axes, optional
        Axes to draw on; a new figure is created otherwise.

    Returns
    -------
    (fig, ax)
    """
    import matplotlib.pyplot as plt
    from .expression import ave_log_cpm

    if y.get('common.dispersion') is None and y.get('tagwise.dispersion') is None:
        raise ValueError("No dispersions to plot. Run estimate_disp first.")
    alc = y.get('AveLogCPM')
    if alc is None:
        alc = ave_log_cpm(y)
    alc = np.asarray(alc)

    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 6))
    else:
        fig = ax.figure

    if y.get('tagwise.dispersion') is not None:
        ax.scatter(alc, np.sqrt(y['tagwise.dispersion']), s=s, alpha=0.3,
                   c=col_tagwise, label='Tagwise')
    if y.get('trended.dispersion') is not None:
        o = np.argsort(alc, kind='stable')
        ax.plot(alc[o], np.sqrt(np.asarray(y['trended.dispersion'])[o]),
                c=col_trend, linewidth=2, label='Trend')
    if y.get('common.dispersion') is not None and np.isfinite(y['common.dispersion']):
        ax.axhline(y=np.sqrt(y['common.dispersion']), color=col_common, linewidth=2,
                   label='Common')

    ax.set_xlabel(xlab)
    ax.set_ylabel(ylab)
    ax.legend()
    fig.tight_layout()
    return fig, ax


def plot_md(res, fdr=0.05, xlab='Average log CPM', ylab='log-fold-change',
            main=None, s=4, col_up='red', col_down='blue', col_other='black', ax=None):
    """Mean-difference plot of a test result, DE genes highlighted.

    Genes with BH-adjusted p-value below ``fdr`` are coloured by direction;
    genes with undefined results are not drawn.

    Returns
    -------
    (fig, ax)
    """
    import matplotlib.pyplot as plt
    from .results import decide_tests

    table = res['table']
    if 'logFC' not in table.columns:
        raise ValueError("plot_md needs a single logFC column")
    x = table['logCPM'].to_numpy(dtype=np.float64)
    m = table['logFC'].to_numpy(dtype=np.float64)
    status = decide_tests(res, p_value=fdr)
    defined = np.isfinite(x) & np.isfinite(m) & table['PValue'].notna().to_numpy()

    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 6))
    else:
        fig = ax.figure

    for code, colour, label in ((0, col_other, 'NotSig'), (1, col_up, 'Up'),
                                (-1, col_down, 'Down')):
        sel = defined & (status == code)
        if np.any(sel):
            ax.scatter(x[sel], m[sel], s=s if code == 0 else 2 * s, c=colour,
                       label=f"{label} ({int(sel.sum())})")

    ax.axhline(0, color='grey', linewidth=0.5)
    ax.set_xlabel(xlab)
    ax.set_ylabel(ylab)
    ax.set_title(main if main is not None else str(res.get('comparison', '')))
    if ax.get_legend_handles_labels()[0]:
        ax.legend()
    fig.tight_layout()
    return fig, ax
