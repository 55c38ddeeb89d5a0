"""Unit tests for coexpression/eigengenes.py"""

import numpy as np
import pandas as pd
import pytest

from coexpression.clustering import UNASSIGNED, ModuleAssignment
from coexpression.eigengenes import (
    EigengeneCalculator,
    ModuleMerger,
    hub_genes,
    intramodular_connectivity,
    me_name,
    merge_close_modules,
    module_eigengenes,
    module_from_me,
    module_membership,
    standardize,
)
from coexpression.errors import DegenerateDataError

from conftest import PROFILE_A, PROFILE_B, PROFILE_C, SAMPLES, make_block


# 0.95 correlated with PROFILE_A
PROFILE_Q = 0.95 * PROFILE_A + np.sqrt(1 - 0.95 ** 2) * PROFILE_B


def _make_module_data():
    """turquoise (12 genes, A), blue (8 genes, Q), brown (6 genes, C), 2 grey."""
    cols = {}
    cols.update(make_block(PROFILE_A, 'T', 12))
    cols.update(make_block(PROFILE_Q, 'U', 8))
    cols.update(make_block(PROFILE_C, 'R', 6))
    rng = np.random.default_rng(3)
    cols['G00'] = rng.normal(size=len(SAMPLES))
    cols['G01'] = rng.normal(size=len(SAMPLES))
    expr = pd.DataFrame(cols, index=SAMPLES)
    labels = (['turquoise'] * 12 + ['blue'] * 8 + ['brown'] * 6 + [UNASSIGNED] * 2)
    return expr, ModuleAssignment.from_labels(expr.columns, labels)


def _corr(a, b):
    return float(np.corrcoef(a, b)[0, 1])


class TestEigengeneCalculator:
    def test_columns_and_order(self):
        expr, assignment = _make_module_data()
        eig = EigengeneCalculator().compute(expr, assignment)
        assert list(eig.eigengenes.columns) == ['MEturquoise', 'MEblue', 'MEbrown']
        assert eig.modules == ['turquoise', 'blue', 'brown']
        assert list(eig.eigengenes.index) == SAMPLES
        assert len(eig) == 3

    def test_unit_norm_and_sign(self):
        expr, assignment = _make_module_data()
        eig = EigengeneCalculator().compute(expr, assignment)
        for col in eig.eigengenes.columns:
            assert np.isclose(np.linalg.norm(eig.eigengenes[col]), 1.0)
        assert _corr(eig.get('turquoise'), PROFILE_A) > 0.999
        assert _corr(eig.get('brown'), PROFILE_C) > 0.999

    def test_sign_follows_average_expression(self):
        expr, assignment = _make_module_data()
        expr = -expr
        eig = EigengeneCalculator().compute(expr, assignment)
        for module in eig.modules:
            ae = eig.average_expression[f"AE{module}"]
            assert _corr(eig.get(module), ae) > 0

    def test_variance_explained(self):
        expr, assignment = _make_module_data()
        eig = EigengeneCalculator().compute(expr, assignment)
        assert np.allclose(eig.variance_explained.to_numpy(), 1.0)

    def test_include_unassigned(self):
        expr, assignment = _make_module_data()
        eig = EigengeneCalculator(include_unassigned=True).compute(expr, assignment)
        assert me_name(UNASSIGNED) in eig.eigengenes.columns

    def test_single_gene_module(self):
        expr, _ = _make_module_data()
        assignment = ModuleAssignment.from_labels(['T00', 'R00'], ['turquoise', 'blue'])
        eig = EigengeneCalculator().compute(expr[['T00', 'R00']], assignment)
        expected = standardize(expr[['T00']].to_numpy())[:, 0]
        expected /= np.linalg.norm(expected)
        assert np.allclose(eig.get('turquoise').to_numpy(), expected)

    def test_constant_single_gene_raises(self):
        expr = pd.DataFrame({'c': np.full(len(SAMPLES), 2.0)}, index=SAMPLES)
        assignment = ModuleAssignment.from_labels(['c'], ['turquoise'])
        with pytest.raises(DegenerateDataError) as exc:
            EigengeneCalculator().compute(expr, assignment)
        assert exc.value.details['module'] == 'turquoise'

    def test_missing_values_imputed(self):
        expr, assignment = _make_module_data()
        expr.iloc[0, 0] = np.nan
        expr.iloc[4, 13] = np.nan
        eig = EigengeneCalculator().compute(expr, assignment)
        assert np.all(np.isfinite(eig.eigengenes.to_numpy()))
        assert _corr(eig.get('turquoise'), PROFILE_A) > 0.99

    def test_standalone(self):
        expr, assignment = _make_module_data()
        assert len(module_eigengenes(expr, assignment)) == 3


class TestModuleMerger:
    def test_close_modules_merged(self):
        expr, assignment = _make_module_data()
        result = ModuleMerger(threshold=0.10).merge(expr, assignment)
        assert result.assignment.modules() == ['turquoise', 'brown']
        assert result.assignment.sizes()['turquoise'] == 20
        assert result.merge_map == {'turquoise': 'turquoise', 'blue': 'turquoise',
                                    'brown': 'brown'}
        assert result.n_merged == 1
        assert list(result.eigengenes.eigengenes.columns) == ['MEturquoise', 'MEbrown']

    def test_low_threshold_keeps_modules(self):
        expr, assignment = _make_module_data()
        result = ModuleMerger(threshold=0.01).merge(expr, assignment)
        assert result.assignment.modules() == ['turquoise', 'blue', 'brown']
        assert result.n_merged == 0
        assert result.n_iterations == 1

    def test_merge_is_idempotent(self):
        expr, assignment = _make_module_data()
        merger = ModuleMerger(threshold=0.10)
        first = merger.merge(expr, assignment)
        second = merger.merge(expr, first.assignment)
        pd.testing.assert_series_equal(first.assignment.labels, second.assignment.labels)
        assert second.n_merged == 0

    def test_unassigned_untouched(self):
        expr, assignment = _make_module_data()
        result = merge_close_modules(expr, assignment, threshold=0.10)
        assert result.assignment.members(UNASSIGNED) == ['G00', 'G01']

    def test_dendrogram_excludes_unassigned(self):
        expr, assignment = _make_module_data()
        eig = EigengeneCalculator(include_unassigned=True).compute(expr, assignment)
        dendro = ModuleMerger().eigengene_dendrogram(eig)
        assert UNASSIGNED not in dendro.labels
        assert dendro.n_leaves == 3

    def test_single_module_no_dendrogram(self):
        expr, assignment = _make_module_data()
        only = ModuleAssignment.from_labels(expr.columns, ['turquoise'] * expr.shape[1])
        result = ModuleMerger().merge(expr, only)
        assert result.dendrogram is None
        assert result.n_merged == 0


class TestMembership:
    def test_kme(self):
        expr, assignment = _make_module_data()
        eig = EigengeneCalculator().compute(expr, assignment)
        kme, pval = module_membership(expr, eig)
        assert list(kme.columns) == ['kMEturquoise', 'kMEblue', 'kMEbrown']
        assert np.allclose(kme.loc['T00':'T11', 'kMEturquoise'], 1.0)
        assert np.isclose(kme.loc['U00', 'kMEturquoise'], 0.95)
        assert ((pval.to_numpy() > 0) & (pval.to_numpy() <= 1)).all()

    def test_intramodular_connectivity(self):
        expr, assignment = _make_module_data()
        k_total = pd.Series(30.0, index=expr.columns)
        kim = intramodular_connectivity(expr, assignment, power=6, k_total=k_total)
        assert np.allclose(kim.loc['T00':'T11', 'k_within'], 11.0)
        assert np.allclose(kim.loc['R00':'R05', 'k_within'], 5.0)
        assert np.isnan(kim.loc['G00', 'k_within'])
        assert np.isclose(kim.loc['T00', 'k_out'], 19.0)
        assert np.isclose(kim.loc['T00', 'k_diff'], -8.0)

    def test_hub_genes(self):
        assignment = ModuleAssignment.from_labels(['a', 'b', 'c', 'd'],
                                                  ['turquoise', 'turquoise', 'turquoise', 'blue'])
        kme = pd.DataFrame({'kMEturquoise': [0.5, 0.9, 0.7, 0.1],
                            'kMEblue': [0.0, 0.0, 0.0, 1.0]},
                           index=['a', 'b', 'c', 'd'])
        hubs = hub_genes(kme, assignment, n=2)
        assert hubs == {'turquoise': ['b', 'c'], 'blue': ['d']}


class TestNames:
    def test_round_trip(self):
        assert module_from_me(me_name('blue')) == 'blue'
        assert module_from_me('blue') == 'blue'


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
