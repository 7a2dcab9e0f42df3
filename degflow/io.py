"""
Reading count tables and sample sheets, and writing result tables.
"""

import logging
import os

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def _sep_for(path, sep=None):
    if sep is not None:
        return sep
    return ',' if str(path).endswith('.csv') else '\t'


def read_table(path, sep=None, index_col=0):
    """Read a delimited table with identifiers in the first column.

    The separator defaults to ',' for ``.csv`` files and tab otherwise.
    Identifiers are converted to strings.
    """
    df = pd.read_csv(path, sep=_sep_for(path, sep), index_col=index_col)
    df.index = df.index.astype(str)
    logger.debug("read %s: %d rows x %d columns", os.path.basename(str(path)), *df.shape)
    return df


def read_dataset(counts, samples, genes=None, sep=None):
    """Read the counts, sample sheet and optional gene annotation of a study.

    Non-numeric columns in the count table (e.g. gene symbols) are moved to
    the gene annotation when no separate annotation file is given.

    Returns
    -------
    dict with 'counts', 'samples' and 'genes' DataFrames ('genes' may be
    None).
    """
    count_df = read_table(counts, sep=sep)
    numeric = count_df.select_dtypes(include=[np.number]).columns
    annotation = [c for c in count_df.columns if c not in numeric]
    gene_df = None
    if annotation:
        if genes is None:
            gene_df = count_df[annotation]
        count_df = count_df[numeric]
    if genes is not None:
        gene_df = read_table(genes, sep=sep)

    sample_df = read_table(samples, sep=sep)
    logger.info("Read %d genes x %d samples from %s",
                count_df.shape[0], count_df.shape[1], os.path.basename(str(counts)))
    return {'counts': count_df, 'samples': sample_df, 'genes': gene_df}


def write_table(top, path=None, sep=','):
    """Write a TopTags (or DataFrame) table.

    Returns the text when ``path`` is None.
    """
    table = top['table'] if isinstance(top, dict) else top
    if path is None:
        return table.to_csv(sep=sep, index_label='GeneID')
    table.to_csv(path, sep=sep, index_label='GeneID')
    logger.info("Wrote %d rows to %s", len(table), path)
    return None
