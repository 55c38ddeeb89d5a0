"""Unit tests for coexpression/comparisons.py"""

import dataclasses
import os

import numpy as np
import pandas as pd
import pytest

from coexpression.clustering import ModuleAssignment
from coexpression.comparisons import (
    ComparisonResult,
    ComparisonSet,
    classify_regulation,
    export_gene_lists,
    filter_significant,
    module_overlap,
)
from coexpression.errors import InputShapeError


def _make_table():
    return pd.DataFrame({
        'baseMean': [100.0, 50.0, 80.0, 10.0, 30.0],
        'log2FoldChange': [2.5, -1.2, 0.3, 3.0, np.nan],
        'padj': [0.001, 0.01, 0.001, 0.2, 0.01],
    }, index=['g1', 'g2', 'g3', 'g4', 'g5'])


def _make_result(label='inf_vs_ctrl'):
    return ComparisonResult.from_table(label, _make_table())


class TestComparisonResult:
    def test_columns_normalised(self):
        result = _make_result()
        assert {'log2fc', 'padj', 'baseMean'} <= set(result.table.columns)
        assert result.genes == ['g1', 'g2', 'g3', 'g4', 'g5']

    def test_alternative_column_names(self):
        df = pd.DataFrame({'logFC': [1.5], 'adj.P.Val': [0.01]}, index=['g1'])
        result = ComparisonResult.from_table('limma', df)
        assert result.table.loc['g1', 'log2fc'] == 1.5

    def test_explicit_columns(self):
        df = pd.DataFrame({'lfc_shrunk': [1.5], 'q': [0.01]}, index=['g1'])
        result = ComparisonResult.from_table('x', df, log2fc_col='lfc_shrunk', padj_col='q')
        assert result.table.loc['g1', 'padj'] == 0.01

    def test_missing_column(self):
        df = pd.DataFrame({'log2FoldChange': [1.0]}, index=['g1'])
        with pytest.raises(InputShapeError) as exc:
            ComparisonResult.from_table('x', df)
        assert exc.value.stage == 'comparisons'

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            _make_result().label = 'other'


class TestClassification:
    def test_classify(self):
        reg = classify_regulation(_make_result(), 1.0, 0.05)
        assert reg.to_dict() == {'g1': 'up', 'g2': 'down', 'g3': 'ns', 'g4': 'ns', 'g5': 'ns'}

    def test_thresholds(self):
        reg = classify_regulation(_make_result(), 0.2, 0.5)
        assert reg['g3'] == 'up'
        assert reg['g4'] == 'up'

    def test_filter_significant(self):
        sig = filter_significant(_make_result())
        assert sig.index.tolist() == ['g1', 'g2']
        assert filter_significant(_make_result(), direction='down').index.tolist() == ['g2']
        with pytest.raises(ValueError):
            filter_significant(_make_result(), direction='sideways')

    def test_export(self, tmp_path):
        paths = export_gene_lists(_make_result(), str(tmp_path))
        assert os.path.basename(paths['up']) == 'inf_vs_ctrl_up.txt'
        with open(paths['up']) as f:
            assert f.read().split() == ['g1']
        with open(paths['significant']) as f:
            assert f.read().split() == ['g1', 'g2']


class TestComparisonSet:
    def test_mapping(self):
        cs = ComparisonSet.from_tables({'a': _make_table(), 'b': _make_table()})
        assert list(cs) == ['a', 'b']
        assert len(cs) == 2
        assert cs['a'].label == 'a'
        assert 'c' not in cs

    def test_add_returns_new_set(self):
        cs = ComparisonSet()
        cs2 = cs.add(_make_result('x'))
        assert len(cs) == 0
        assert list(cs2) == ['x']

    def test_summary(self):
        summary = ComparisonSet.from_tables({'a': _make_table()}).summary()
        row = summary.iloc[0]
        assert row['comparison'] == 'a'
        assert (row['n_genes'], row['n_up'], row['n_down'], row['n_ns']) == (5, 1, 1, 3)

    def test_module_overlap(self):
        cs = ComparisonSet.from_tables({'a': _make_table()})
        assignment = ModuleAssignment.from_labels(
            ['g1', 'g2', 'g3', 'g6'], ['turquoise', 'turquoise', 'blue', 'grey'])
        overlap = module_overlap(cs, assignment)
        assert overlap.index.tolist() == ['turquoise', 'blue', 'grey']
        assert overlap.loc['turquoise', 'a_up'] == 1
        assert overlap.loc['turquoise', 'a_down'] == 1
        assert overlap['a_up'].sum() == 1


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
