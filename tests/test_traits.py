"""Unit tests for coexpression/traits.py"""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from coexpression.clustering import ModuleAssignment
from coexpression.eigengenes import EigengeneCalculator
from coexpression.errors import InputShapeError
from coexpression.traits import (
    TraitCorrelator,
    correlation_pvalue,
    fdr_bh,
    gene_significance,
    module_trait_correlation,
)

from conftest import GROUP, SAMPLES, make_marker_expression, make_traits


def _make_marker_eigengenes():
    expr = make_marker_expression()
    labels = ['turquoise' if g.startswith('M') else 'blue' if g.startswith('B') else 'grey'
              for g in expr.columns]
    assignment = ModuleAssignment.from_labels(expr.columns, labels)
    return expr, EigengeneCalculator().compute(expr, assignment).eigengenes


class TestCorrelationPvalue:
    def test_matches_scipy(self):
        rng = np.random.default_rng(0)
        x = pd.DataFrame(rng.normal(size=(15, 3)), columns=['a', 'b', 'c'])
        y = pd.DataFrame(rng.normal(size=(15, 2)), columns=['t1', 't2'])
        corr, pval, n_obs = correlation_pvalue(x, y)
        for xi in x.columns:
            for yi in y.columns:
                r, p = stats.pearsonr(x[xi], y[yi])
                assert np.isclose(corr.loc[xi, yi], r)
                assert np.isclose(pval.loc[xi, yi], p)
        assert (n_obs.to_numpy() == 15).all()

    def test_pairwise_complete(self):
        rng = np.random.default_rng(1)
        x = pd.DataFrame(rng.normal(size=(12, 1)), columns=['a'])
        y = pd.DataFrame(rng.normal(size=(12, 1)), columns=['t'])
        y.iloc[[0, 5], 0] = np.nan
        corr, pval, n_obs = correlation_pvalue(x, y)
        keep = y['t'].notna()
        r, p = stats.pearsonr(x.loc[keep, 'a'], y.loc[keep, 't'])
        assert np.isclose(corr.iloc[0, 0], r)
        assert np.isclose(pval.iloc[0, 0], p)
        assert n_obs.iloc[0, 0] == 10

    def test_too_few_samples_is_nan(self):
        x = pd.DataFrame({'a': [1.0, 2.0, 3.0, 4.0]})
        y = pd.DataFrame({'t': [1.0, np.nan, np.nan, 2.0]})
        corr, pval, _ = correlation_pvalue(x, y)
        assert np.isnan(corr.iloc[0, 0])
        assert np.isnan(pval.iloc[0, 0])

    def test_constant_is_nan(self):
        x = pd.DataFrame({'a': [1.0, 2.0, 3.0, 4.0, 5.0]})
        y = pd.DataFrame({'t': [3.0] * 5})
        corr, pval, _ = correlation_pvalue(x, y)
        assert np.isnan(corr.iloc[0, 0])
        assert np.isnan(pval.iloc[0, 0])

    def test_perfect_correlation(self):
        x = pd.DataFrame({'a': [1.0, 2.0, 3.0, 4.0, 5.0]})
        y = pd.DataFrame({'t': [2.0, 4.0, 6.0, 8.0, 10.0]})
        corr, pval, _ = correlation_pvalue(x, y)
        assert np.isclose(corr.iloc[0, 0], 1.0)
        assert 0 < pval.iloc[0, 0] < 1e-10


class TestTraitCorrelator:
    def test_ranges(self):
        _, eig = _make_marker_eigengenes()
        result = TraitCorrelator().correlate(eig, make_traits())
        r = result.correlation.to_numpy()
        p = result.pvalue.to_numpy()
        assert ((r >= -1) & (r <= 1)).all()
        assert ((p > 0) & (p <= 1)).all()
        assert list(result.correlation.index) == list(eig.columns)
        assert list(result.correlation.columns) == ['infected', 'weight']

    def test_marker_module_tracks_group(self):
        _, eig = _make_marker_eigengenes()
        result = module_trait_correlation(eig, make_traits())
        assert result.correlation.loc['MEturquoise', 'infected'] > 0.999
        assert result.pvalue.loc['MEturquoise', 'infected'] < 1e-6
        assert result.fdr.loc['MEturquoise', 'infected'] < 1e-5

    def test_trait_order_independent(self):
        _, eig = _make_marker_eigengenes()
        traits = make_traits()
        shuffled = traits.iloc[::-1]
        a = TraitCorrelator().correlate(eig, traits)
        b = TraitCorrelator().correlate(eig, shuffled)
        pd.testing.assert_frame_equal(a.correlation, b.correlation)
        pd.testing.assert_frame_equal(a.pvalue, b.pvalue)

    def test_inputs_not_mutated(self):
        _, eig = _make_marker_eigengenes()
        traits = make_traits().iloc[::-1]
        before = traits.copy()
        TraitCorrelator().correlate(eig, traits)
        pd.testing.assert_frame_equal(traits, before)

    def test_misaligned_samples(self):
        _, eig = _make_marker_eigengenes()
        traits = make_traits().rename(index={'S00': 'X99'})
        with pytest.raises(InputShapeError) as exc:
            TraitCorrelator().correlate(eig, traits)
        assert exc.value.details['missing_in_traits'] == ['S00']
        assert exc.value.details['extra_in_traits'] == ['X99']

    def test_to_long_and_significant(self):
        _, eig = _make_marker_eigengenes()
        result = TraitCorrelator().correlate(eig, make_traits())
        long = result.to_long()
        assert len(long) == eig.shape[1] * 2
        assert list(long.columns) == ['module', 'trait', 'correlation', 'pvalue', 'fdr', 'n_obs']
        sig = result.significant(alpha=0.001)
        assert ('MEturquoise', 'infected') in set(zip(sig['module'], sig['trait']))

    def test_save(self, tmp_path):
        _, eig = _make_marker_eigengenes()
        paths = TraitCorrelator().correlate(eig, make_traits()).save(str(tmp_path))
        assert set(paths) == {'correlation', 'pvalue', 'fdr', 'n_obs'}
        saved = pd.read_csv(paths['correlation'], index_col=0)
        assert saved.shape == (eig.shape[1], 2)


class TestGeneSignificance:
    def test_marker_genes(self):
        expr, _ = _make_marker_eigengenes()
        traits = pd.DataFrame({'infected': GROUP}, index=SAMPLES)
        gs, pval = gene_significance(expr, traits)
        assert list(gs.columns) == ['GS.infected']
        assert (gs.loc[[g for g in expr.columns if g.startswith('M')], 'GS.infected'] > 0.99).all()
        assert pval.shape == gs.shape


class TestFdr:
    def test_known_values(self):
        adjusted = fdr_bh(np.array([0.01, 0.04, 0.03, 0.2]))
        assert np.allclose(adjusted, [0.04, 0.16 / 3, 0.16 / 3, 0.2])

    def test_nan_kept(self):
        adjusted = fdr_bh(np.array([0.01, np.nan, 0.02]))
        assert np.isnan(adjusted[1])
        assert np.allclose(adjusted[[0, 2]], [0.02, 0.02])

    def test_monotone_and_bounded(self):
        p = np.random.default_rng(0).uniform(size=50)
        adjusted = fdr_bh(p)
        order = np.argsort(p)
        assert (np.diff(adjusted[order]) >= -1e-12).all()
        # the largest p is scaled by n/n, equal to p only up to rounding
        assert (adjusted >= p - 1e-12).all() and (adjusted <= 1).all()

    @pytest.mark.skipif(not hasattr(stats, 'false_discovery_control'),
                        reason="scipy < 1.11")
    def test_matches_scipy(self):
        p = np.random.default_rng(0).uniform(size=50)
        assert np.allclose(fdr_bh(p), stats.false_discovery_control(p, method='bh'))


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
