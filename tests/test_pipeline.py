"""End-to-end tests of run_analysis and AnalysisConfig."""

import numpy as np
import pandas as pd
import pytest

import degflow as dg


@pytest.fixture
def two_gene_study():
    counts = pd.DataFrame(
        [[100, 110, 10, 12], [50, 52, 48, 51]],
        index=['A', 'B'], columns=['s1', 's2', 's3', 's4'])
    samples = pd.DataFrame({'group': ['trt', 'trt', 'untrt', 'untrt']},
                           index=counts.columns)
    return counts, samples


@pytest.fixture
def study(count_frame, samples6):
    counts = count_frame.copy()
    counts.loc['g50'] = 0
    return counts, samples6


# ── Ranking ───────────────────────────────────────────────────────────

class TestRunAnalysis:
    """run_analysis from counts and a sample sheet."""

    def test_two_gene_ranking(self, two_gene_study):
        counts, samples = two_gene_study
        top, res = dg.run_analysis(counts, samples, reference='untrt')
        assert list(top['table'].index) == ['A', 'B']
        assert top['table']['logFC'].iloc[0] > 0
        assert top['table']['FDR'].iloc[0] <= top['table']['FDR'].iloc[1]
        assert res['comparison'] == 'group[T.trt]'

    def test_top_n(self, study):
        top, res = dg.run_analysis(*study, reference='untrt')
        assert len(top) == 10
        assert len(res['table']) == 100
        assert set(top['table'].index[:10]) == {f"g{i+1}" for i in range(10)}

    def test_all_zero_gene(self, study):
        top, res = dg.run_analysis(*study, reference='untrt', top_n=None)
        row = res['table'].loc['g50']
        assert np.isnan(row['PValue'])
        assert row['flag'] == 'all_zero'
        assert np.isnan(top['table'].loc['g50', 'FDR'])
        assert top['n.undefined'] >= 1

    def test_reference_swap(self, study):
        _, a = dg.run_analysis(*study, reference='untrt')
        _, b = dg.run_analysis(*study, reference='trt')
        assert b['comparison'] == 'group[T.untrt]'
        np.testing.assert_allclose(a['table']['logFC'], -b['table']['logFC'],
                                   rtol=1e-6, atol=1e-8)
        np.testing.assert_allclose(a['table']['PValue'], b['table']['PValue'],
                                   rtol=1e-5, atol=1e-12)

    def test_worker_count(self, study):
        _, one = dg.run_analysis(*study, reference='untrt', n_workers=1)
        _, many = dg.run_analysis(*study, reference='untrt', n_workers=3)
        pd.testing.assert_frame_equal(one['table'], many['table'])

    def test_wald(self, study):
        top, res = dg.run_analysis(*study, reference='untrt', test='wald')
        assert res['test'] == 'wald'
        assert 'z' in top['table'].columns

    def test_filter(self, study):
        _, res = dg.run_analysis(*study, reference='untrt', filter=True)
        assert 'g50' not in res['table'].index
        assert len(res['table']) < 100

    def test_nuisance_covariate(self, study):
        counts, samples = study
        samples = samples.assign(batch=['a', 'b', 'c', 'a', 'b', 'c'])
        config = dg.AnalysisConfig(reference='untrt', design='~ batch + group')
        top, res = dg.run_analysis(counts, samples, config=config)
        assert res['comparison'] == 'group[T.trt]'
        assert len(top) == 10

    def test_group_column_as_covariate(self, count_frame, condition_samples):
        top, res = dg.run_analysis(count_frame, condition_samples,
                                   design=('group', 'condition'), reference='ctl',
                                   extra_references={'group': 'x'})
        assert res['comparison'] == 'condition[T.trt]'
        assert list(res['samples']['group']) == ['x', 'y', 'x', 'y', 'x', 'y']
        assert len(top) == 10
        assert set(top['table'].index[:5]) <= {f"g{i+1}" for i in range(10)}

    def test_wald_separated_genes_undefined(self, study):
        top, res = dg.run_analysis(*study, reference='untrt', test='wald', top_n=None)
        separated = res['table'].loc[[f"g{i}" for i in range(6, 11)]]
        assert list(separated['flag']) == ['separated'] * 5
        assert separated['PValue'].isna().all()
        assert separated['SE'].isna().all()
        assert np.all(np.isfinite(separated['logFC']))
        assert top['n.undefined'] >= 6

    def test_gene_annotation(self, study):
        counts, samples = study
        genes = pd.DataFrame({'symbol': [f"SYM{i}" for i in range(len(counts))]},
                             index=counts.index)
        top, _ = dg.run_analysis(counts, samples, genes, reference='untrt')
        assert top['table'].columns[0] == 'symbol'


# ── Structural Errors ─────────────────────────────────────────────────

class TestStructuralErrors:
    """Input problems are raised before any modelling."""

    def test_shape_mismatch(self, study):
        counts, samples = study
        with pytest.raises(dg.ShapeMismatchError):
            dg.run_analysis(counts, samples.iloc[:5], reference='untrt')

    def test_missing_reference(self, study):
        with pytest.raises(dg.MissingReferenceLevelError):
            dg.run_analysis(*study)

    def test_unknown_reference(self, study):
        with pytest.raises(dg.MissingReferenceLevelError):
            dg.run_analysis(*study, reference='placebo')


# ── Configuration ─────────────────────────────────────────────────────

class TestAnalysisConfig:
    """AnalysisConfig parsing and validation."""

    def test_defaults(self):
        config = dg.AnalysisConfig()
        assert config.top_n == 10
        assert config.test == 'lrt'
        assert config.adjust_method == 'BH'
        assert config.validate() is config

    def test_from_dict(self):
        config = dg.AnalysisConfig.from_dict({'reference': 'ctrl', 'top_n': 25})
        assert config.reference == 'ctrl'
        assert config.top_n == 25

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="unknown"):
            dg.AnalysisConfig.from_dict({'topn': 5})

    @pytest.mark.parametrize("field,value", [
        ('test', 'exact'), ('norm_method', 'quantile'), ('adjust_method', 'qvalue'),
        ('trend', 'loess'), ('top_n', 0), ('n_workers', 0), ('prior_df', -1),
    ])
    def test_invalid(self, field, value):
        with pytest.raises(ValueError):
            dg.AnalysisConfig(**{field: value}).validate()

    def test_design_spec(self):
        spec = dg.AnalysisConfig(reference='ctrl', design=('batch', 'group'),
                                 extra_references={'batch': 'b1'}).design_spec()
        assert spec.tested == 'group'
        assert dict(spec.reference) == {'batch': 'b1', 'group': 'ctrl'}
