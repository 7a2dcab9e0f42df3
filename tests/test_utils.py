"""Tests for utilities: degenerate genes, matrix helpers and the gene-block map."""

import numpy as np
import pytest

import degflow as dg
from degflow.utils import (expand_as_matrix, gene_blocks, map_gene_blocks,
                           merge_flags, is_oneway)


# ── Degenerate Genes ──────────────────────────────────────────────────

class TestCheckGene:
    """check_gene raises with the reason; gene_flags records it."""

    @pytest.mark.parametrize("counts,groups,reason", [
        ([0, 0, 0, 0], None, 'all_zero'),
        ([5, 5, 5, 5], None, 'zero_variance'),
        ([3, 4, 0, 0], [0, 0, 1, 1], 'separated'),
    ])
    def test_reasons(self, counts, groups, reason):
        with pytest.raises(dg.DegenerateGeneError) as info:
            dg.check_gene(counts, groups, gene='G')
        assert info.value.reason == reason
        assert info.value.gene == 'G'
        assert 'G' in str(info.value)

    def test_fine_gene(self):
        assert dg.check_gene([3, 4, 1, 0], [0, 0, 1, 1]) is None

    def test_gene_flags(self, small_counts, design6):
        counts = small_counts.copy()
        counts[20] = 0
        flags = dg.gene_flags(counts, design6)
        assert flags[20] == 'all_zero'
        assert list(flags[5:10]) == ['separated'] * 5
        assert np.sum(flags != '') == 6

    def test_separation_needs_groups(self):
        flags = dg.gene_flags([[3, 4, 0, 0]], np.ones((4, 1)))
        assert flags[0] == ''

    def test_merge_flags(self):
        out = merge_flags(np.array(['', 'a', ''], dtype=object), ['b', 'c', ''])
        assert list(out) == ['b', 'a', '']


# ── Matrix Helpers ────────────────────────────────────────────────────

class TestMatrixHelpers:
    """expand_as_matrix and is_oneway."""

    def test_expand_scalar(self):
        assert np.array_equal(expand_as_matrix(2.0, (2, 3)), np.full((2, 3), 2.0))

    def test_expand_by_column(self):
        out = expand_as_matrix([1.0, 2.0, 3.0], (2, 3))
        assert np.array_equal(out[1], [1, 2, 3])

    def test_expand_by_row(self):
        out = expand_as_matrix([1.0, 2.0], (2, 3))
        assert np.array_equal(out[:, 2], [1, 2])

    def test_expand_wrong_length(self):
        with pytest.raises(ValueError):
            expand_as_matrix([1.0, 2.0, 3.0, 4.0], (2, 3))

    def test_is_oneway(self, design6):
        assert is_oneway(design6)
        assert not is_oneway(np.column_stack([np.ones(6), np.arange(6.0)]))


# ── Gene Blocks ───────────────────────────────────────────────────────

class TestGeneBlocks:
    """Splitting genes across workers."""

    def test_blocks_cover_genes(self):
        blocks = gene_blocks(10, n_workers=3)
        assert len(blocks) == 3
        assert np.array_equal(np.concatenate(blocks), np.arange(10))

    def test_more_workers_than_genes(self):
        assert len(gene_blocks(2, n_workers=8)) == 2

    def test_map_preserves_order(self):
        out = map_gene_blocks(lambda rows: rows * 2, 7, n_workers=3)
        assert np.array_equal(np.concatenate([r for _, r in out]), np.arange(7) * 2)
        assert np.array_equal(np.concatenate([b for b, _ in out]), np.arange(7))

    def test_no_genes(self):
        assert map_gene_blocks(lambda rows: rows, 0) == []
