"""Tests for per-gene tests (LRT, Wald), p-value adjustment and ranking."""

import numpy as np
import pandas as pd
import pytest

import degflow as dg


def _fit(y):
    return dg.glm_fit(dg.estimate_disp(dg.calc_norm_factors(y)))


@pytest.fixture
def fit(dgelist):
    return _fit(dgelist)


@pytest.fixture
def swapped_fit(dgelist):
    return _fit(dg.relevel(dgelist, 'trt'))


def _result(pvalues, index=None, logfc=None):
    n = len(pvalues)
    index = index or [f"gene{i}" for i in range(n)]
    table = pd.DataFrame({
        'logFC': np.zeros(n) if logfc is None else logfc,
        'logCPM': np.full(n, 5.0),
        'PValue': pvalues,
        'flag': [''] * n,
    }, index=index)
    return dg.DGELRT({'table': table, 'comparison': 'group[T.trt]', 'test': 'lrt'})


# ── Likelihood Ratio Test ─────────────────────────────────────────────

class TestGlmLRT:
    """glm_lrt."""

    def test_table(self, fit):
        res = dg.glm_lrt(fit)
        tab = res['table']
        assert list(tab.columns) == ['logFC', 'logCPM', 'LR', 'PValue', 'flag']
        assert list(tab.index[:2]) == ['g1', 'g2']
        assert res['comparison'] == 'group[T.trt]'
        assert res['df.test'] == 1
        p = tab['PValue'].dropna()
        assert np.all((p >= 0) & (p <= 1))

    def test_de_genes_detected(self, fit):
        tab = dg.glm_lrt(fit)['table']
        assert np.all(tab['logFC'].iloc[:5] > 0)
        assert np.all(tab['logFC'].iloc[5:10] < 0)
        assert np.all(tab['PValue'].iloc[:10] < 1e-3)

    def test_coef_by_level(self, fit):
        by_level = dg.glm_lrt(fit, coef='trt')['table']
        by_default = dg.glm_lrt(fit)['table']
        pd.testing.assert_frame_equal(by_level, by_default)

    def test_intercept_only(self, small_counts):
        fit = dg.glm_fit(small_counts, dispersion=0.1)
        with pytest.raises(ValueError, match="two columns"):
            dg.glm_lrt(fit)

    def test_reference_swap(self, fit, swapped_fit):
        a = dg.glm_lrt(fit)['table']
        b = dg.glm_lrt(swapped_fit)['table']
        assert dg.glm_lrt(swapped_fit)['comparison'] == 'group[T.untrt]'
        np.testing.assert_allclose(a['logFC'], -b['logFC'], rtol=1e-6, atol=1e-8)
        np.testing.assert_allclose(a['PValue'], b['PValue'], rtol=1e-5, atol=1e-12)
        assert list(a['flag']) == list(b['flag'])

    def test_all_zero_gene(self, small_counts, samples6):
        counts = small_counts.copy()
        counts[40] = 0
        y = dg.make_dgelist(counts, samples=samples6.reset_index(drop=True),
                            reference='untrt')
        tab = dg.glm_lrt(_fit(y))['table']
        assert np.isnan(tab['PValue'].iloc[40])
        assert tab['flag'].iloc[40] == 'all_zero'
        assert tab['PValue'].drop(tab.index[40]).notna().sum() > 90


class TestOutliers:
    """Cook's distance outlier flags."""

    def test_outlier_flagged(self, rng, design6):
        counts = rng.poisson(100, (50, 6)).astype(np.float64)
        counts[0, 1] = 5000
        fit = dg.glm_fit(counts, design=design6, dispersion=0.01)
        res = dg.glm_lrt(fit)
        assert res['table']['flag'].iloc[0] == 'outlier'
        assert np.isnan(res['table']['PValue'].iloc[0])
        kept = dg.glm_lrt(fit, cooks_cutoff=False)['table']
        assert np.isfinite(kept['PValue'].iloc[0])

    def test_small_groups_not_checked(self, rng):
        counts = rng.poisson(100, (20, 4)).astype(np.float64)
        counts[0, 0] = 5000
        design = np.column_stack([np.ones(4), [0, 0, 1, 1]])
        fit = dg.glm_fit(counts, design=design, dispersion=0.05)
        assert np.all(dg.glm_lrt(fit)['table']['flag'] != 'outlier')


# ── Wald Test ─────────────────────────────────────────────────────────

class TestGlmWald:
    """glm_wald."""

    def test_table(self, fit):
        tab = dg.glm_wald(fit)['table']
        assert list(tab.columns) == ['logFC', 'logCPM', 'SE', 'z', 'PValue', 'flag']
        ok = tab['flag'] == ''
        assert np.all(tab.loc[ok, 'SE'] > 0)

    def test_reference_swap(self, fit, swapped_fit):
        a = dg.glm_wald(fit)['table']
        b = dg.glm_wald(swapped_fit)['table']
        ok = (a['flag'] == '').to_numpy()
        np.testing.assert_allclose(a['z'][ok], -b['z'][ok], rtol=1e-5)
        np.testing.assert_allclose(a['PValue'][ok], b['PValue'][ok], rtol=1e-5, atol=1e-12)

    def test_single_coefficient(self, fit):
        with pytest.raises(ValueError, match="single"):
            dg.glm_wald(fit, coef=[0, 1])


# ── Degenerate Genes ──────────────────────────────────────────────────

class TestDegenerateGenes:
    """Separated and zero-variance genes through both tests."""

    @pytest.fixture
    def degenerate_fit(self, small_counts, samples6):
        counts = small_counts.copy()
        counts[20] = [0, 0, 0, 50, 60, 55]
        counts[21] = 7
        y = dg.make_dgelist(counts, samples=samples6.reset_index(drop=True),
                            reference='untrt')
        return _fit(y)

    def test_flags(self, degenerate_fit):
        assert degenerate_fit['flag'][20] == 'separated'
        assert degenerate_fit['flag'][21] == 'zero_variance'

    def test_separated_lrt(self, degenerate_fit):
        row = dg.glm_lrt(degenerate_fit)['table'].iloc[20]
        assert row['flag'] == 'separated'
        assert np.isfinite(row['LR'])
        assert 3 < row['logFC'] < 20
        assert row['PValue'] < 0.01

    def test_separated_wald(self, degenerate_fit):
        wald = dg.glm_wald(degenerate_fit)['table'].iloc[20]
        lrt = dg.glm_lrt(degenerate_fit)['table'].iloc[20]
        assert wald['flag'] == 'separated'
        assert np.isnan(wald['SE'])
        assert np.isnan(wald['z'])
        assert np.isnan(wald['PValue'])
        # Shrunk estimate rather than a diverging one
        assert wald['logFC'] == pytest.approx(lrt['logFC'])

    def test_separated_wald_ranked_last(self, degenerate_fit):
        top = dg.top_tags(dg.glm_wald(degenerate_fit), n=None)['table']
        assert np.isnan(top.loc['21', 'FDR'])
        assert top.index.get_loc('21') >= top['FDR'].notna().sum()

    @pytest.mark.parametrize('test', [dg.glm_lrt, dg.glm_wald])
    def test_zero_variance_gene_tested(self, degenerate_fit, test):
        row = test(degenerate_fit)['table'].iloc[21]
        assert row['flag'] == 'zero_variance'
        assert np.isfinite(row['PValue'])
        assert row['PValue'] > 0.3
        assert abs(row['logFC']) < 0.5


# ── Adjustment ────────────────────────────────────────────────────────

class TestAdjustPValues:
    """adjust_pvalues."""

    def test_bh_not_below_raw(self, rng):
        p = rng.uniform(size=200)
        adj = dg.adjust_pvalues(p)
        assert np.all(adj >= p)
        assert np.all(adj <= 1)

    def test_bh_values(self):
        adj = dg.adjust_pvalues([0.01, 0.02, 0.03, 0.04])
        assert np.allclose(adj, [0.04, 0.04, 0.04, 0.04])

    def test_nan_excluded(self):
        adj = dg.adjust_pvalues([0.01, np.nan, 0.04])
        assert np.isnan(adj[1])
        assert np.allclose(adj[[0, 2]], [0.02, 0.04])

    def test_all_nan(self):
        assert np.all(np.isnan(dg.adjust_pvalues([np.nan, np.nan])))

    def test_bonferroni(self):
        assert np.allclose(dg.adjust_pvalues([0.01, 0.2], 'bonferroni'), [0.02, 0.4])

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            dg.adjust_pvalues([0.1], 'qvalue')


# ── Ranking ───────────────────────────────────────────────────────────

class TestTopTags:
    """top_tags sorting, truncation and bookkeeping."""

    def test_stable_ties_and_nan_last(self):
        res = _result([0.5, 0.01, np.nan, 0.01, 0.5], index=list('abcde'))
        top = dg.top_tags(res, n=None)
        assert list(top['table'].index) == ['b', 'd', 'a', 'e', 'c']
        assert np.allclose(top['table']['FDR'].iloc[:4], [0.02, 0.02, 0.5, 0.5])
        assert np.isnan(top['table']['FDR'].iloc[4])
        assert top['n.undefined'] == 1

    def test_default_n(self, rng):
        top = dg.top_tags(_result(rng.uniform(size=50)))
        assert len(top) == 10

    def test_sorted_fdr(self, fit):
        top = dg.top_tags(dg.glm_lrt(fit), n=None)
        fdr = top['table']['FDR'].to_numpy()
        defined = fdr[~np.isnan(fdr)]
        assert np.all(np.diff(defined) >= 0)
        assert np.all(np.isnan(fdr[len(defined):]))
        raw = top['table']['PValue'].to_numpy()[:len(defined)]
        assert np.all(defined >= raw)

    def test_p_value_cutoff(self):
        top = dg.top_tags(_result([0.001, 0.5, 0.002, 0.9]), p_value=0.05)
        assert list(top['table'].index) == ['gene0', 'gene2']

    def test_fwer_column(self):
        top = dg.top_tags(_result([0.01, 0.02]), adjust_method='holm')
        assert 'FWER' in top['table'].columns

    def test_gene_annotation_first(self, count_frame, samples6):
        genes = pd.DataFrame({'symbol': [f"SYM{i}" for i in range(100)]},
                             index=count_frame.index)
        y = dg.make_dgelist(count_frame, samples=samples6, genes=genes, reference='untrt')
        top = dg.top_tags(dg.glm_lrt(_fit(y)), n=3)
        assert top['table'].columns[0] == 'symbol'
        assert top['table'].loc[top['table'].index[0], 'symbol'].startswith('SYM')

    def test_bad_sort(self):
        with pytest.raises(ValueError, match="sort_by"):
            dg.top_tags(_result([0.1]), sort_by='LR')


class TestDecideTests:
    """decide_tests."""

    def test_directions(self):
        res = _result([1e-6, 1e-6, 0.9, np.nan], logfc=np.array([2.0, -1.5, 3.0, 1.0]))
        assert list(dg.decide_tests(res)) == [1, -1, 0, 0]

    def test_lfc_threshold(self):
        res = _result([1e-6, 1e-6], logfc=np.array([0.5, 2.0]))
        assert list(dg.decide_tests(res, lfc=1)) == [0, 1]
