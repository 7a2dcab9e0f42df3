"""Smoke tests for plotting functions: plot_bcv, plot_md."""

import numpy as np
import pytest
import matplotlib
matplotlib.use('Agg')

import degflow as dg


@pytest.fixture
def close_figures():
    import matplotlib.pyplot as plt
    yield
    plt.close('all')


class TestVisualizationSmoke:
    """Plots draw onto new or given axes."""

    def test_plot_bcv(self, dgelist_disp, close_figures):
        fig, ax = dg.plot_bcv(dgelist_disp)
        labels = ax.get_legend_handles_labels()[1]
        assert 'Tagwise' in labels
        assert 'Common' in labels

    def test_plot_bcv_given_axes(self, dgelist_disp, close_figures):
        import matplotlib.pyplot as plt
        fig, ax = plt.subplots()
        fig2, ax2 = dg.plot_bcv(dgelist_disp, ax=ax)
        assert ax2 is ax and fig2 is fig

    def test_plot_bcv_needs_dispersion(self, dgelist):
        with pytest.raises(ValueError, match="estimate_disp"):
            dg.plot_bcv(dgelist)

    def test_plot_md(self, dgelist_disp, close_figures):
        res = dg.glm_lrt(dg.glm_fit(dgelist_disp))
        fig, ax = dg.plot_md(res)
        assert ax.get_title() == 'group[T.trt]'
        labels = ax.get_legend_handles_labels()[1]
        assert any(label.startswith('Up') for label in labels)
        assert any(label.startswith('Down') for label in labels)
