"""Unit tests for coexpression/quality.py"""

import json

import numpy as np
import pandas as pd
import pytest

from coexpression.errors import DegenerateDataError
from coexpression.quality import QualityFilter, QualityReport, filter_expression

from conftest import make_two_block_expression


class TestQualityFilter:
    def test_clean_matrix_untouched(self, two_block_expression):
        filtered, report = QualityFilter().filter(two_block_expression)
        assert filtered.shape == two_block_expression.shape
        assert report.all_ok
        assert report.n_iterations == 1

    def test_constant_gene_removed(self):
        expr = make_two_block_expression()
        expr['CONST'] = 7.0
        filtered, report = QualityFilter().filter(expr)
        assert 'CONST' not in filtered.columns
        assert report.removed_genes == {'CONST': 'zero_variance'}
        assert filtered.shape == (10, 50)

    def test_missing_gene_removed(self):
        expr = make_two_block_expression()
        expr.iloc[:6, 0] = np.nan
        filtered, report = QualityFilter(max_missing_fraction=0.5).filter(expr)
        assert report.removed_genes == {'A00': 'missing'}
        assert 'A00' not in filtered.columns

    def test_too_few_samples(self):
        expr = make_two_block_expression()
        expr.iloc[:5, 1] = np.nan
        _, report = QualityFilter(max_missing_fraction=0.6, min_n_samples=6).filter(expr)
        assert report.removed_genes['A01'] == 'too_few_samples'

    def test_missing_sample_removed(self):
        expr = make_two_block_expression()
        expr.iloc[2, :40] = np.nan
        filtered, report = QualityFilter().filter(expr)
        assert report.removed_samples == {'S02': 'missing'}
        assert 'S02' not in filtered.index
        assert filtered.shape == (9, 50)

    def test_values_are_preserved(self, two_block_expression):
        expr = two_block_expression.copy()
        expr['CONST'] = 1.0
        filtered, _ = QualityFilter().filter(expr)
        pd.testing.assert_frame_equal(filtered, two_block_expression)

    def test_all_constant_raises(self):
        expr = pd.DataFrame(np.ones((6, 5)), columns=list('abcde'))
        with pytest.raises(DegenerateDataError) as exc:
            QualityFilter().filter(expr)
        assert exc.value.stage == 'quality'

    def test_empty_raises(self):
        with pytest.raises(DegenerateDataError):
            QualityFilter().filter(pd.DataFrame(np.zeros((0, 3))))

    def test_from_config(self):
        qf = QualityFilter.from_config({'quality': {'max_missing_fraction': 0.2,
                                                    'min_n_samples': 8}})
        assert qf.max_missing_fraction == 0.2
        assert qf.min_n_samples == 8
        assert qf.min_n_genes == 4

    def test_standalone_function(self, two_block_expression):
        filtered, report = filter_expression(two_block_expression, min_n_samples=3)
        assert isinstance(report, QualityReport)
        assert filtered.shape == two_block_expression.shape


class TestQualityReport:
    def _make_report(self):
        return QualityReport(removed_genes={'g1': 'zero_variance', 'g2': 'missing'},
                             removed_samples={'s1': 'missing'},
                             n_genes_in=10, n_samples_in=5, n_iterations=2)

    def test_counts(self):
        report = self._make_report()
        assert report.n_genes_out == 8
        assert report.n_samples_out == 4
        assert report.reason_counts() == {'zero_variance': 1, 'missing': 2}
        assert not report.all_ok

    def test_save_json(self, tmp_path):
        path = self._make_report().save_json(str(tmp_path / 'quality.json'))
        with open(path) as f:
            data = json.load(f)
        assert data['n_genes_out'] == 8
        assert data['removed_genes']['g1'] == 'zero_variance'


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
