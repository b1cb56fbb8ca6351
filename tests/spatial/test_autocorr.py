from unittest import TestCase

import numpy as np
import pandas as pd
from anndata import AnnData

from spatialautocorr.errors import InvalidInputError
from spatialautocorr.spatial.autocorr import (
    AutocorrelationResult,
    Undefined,
    calculate_spatial_autocorr,
    calculate_spatial_stats,
)
from spatialautocorr.spatial.statistics import gearys_c, morans_i
from spatialautocorr.spatial.weights import SpatialWeights, build_spatial_weights

from ..mixins import TestMixin, grid_locations, random_expression, square_locations


class TestCalculateSpatialAutocorr(TestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.locations = pd.DataFrame(grid_locations(5), index=[f"spot{j}" for j in range(25)],
                                      columns=['array_row', 'array_col'])
        self.weights = build_spatial_weights(self.locations)
        self.expression = random_expression(8, 25)

    def test_three_genes_one_constant(self):
        expression = pd.DataFrame(
            [[1.0, 2.0, 3.0, 4.0], [5.0, 5.0, 5.0, 5.0], [1.0, 0.0, 0.0, 1.0]],
            index=['up', 'flat', 'checker'],
        )
        weights = build_spatial_weights(square_locations())
        results = calculate_spatial_autocorr(expression, weights)

        self.assertEqual({'moran', 'geary'}, set(results))
        moran = results['moran']
        self.assertEqual(['up', 'flat', 'checker'], list(moran))
        self.assertIsInstance(moran['flat'], Undefined)
        self.assertEqual('flat', moran['flat'].gene)
        self.assertIn('constant', moran['flat'].reason)
        self.assertEqual(['flat'], moran.undefined_genes)
        self.assertAlmostEqual(0.0, moran['up'], delta=1e-9)
        self.assertAlmostEqual(-1.0, moran['checker'], delta=1e-9)
        self.assertAlmostEqual(0.75, results['geary']['up'], delta=1e-9)
        self.assertAlmostEqual(1.5, results['geary']['checker'], delta=1e-9)

        table = moran.to_frame()
        self.assertEqual(3, len(table))
        self.assertEqual([True, False, True], table['defined'].tolist())
        self.assertTrue(pd.isna(table.loc['flat', 'moran']))
        self.assertEqual(2, len(moran.defined()))

    def test_reused_weights_match_recomputed(self):
        results = calculate_spatial_autocorr(self.expression, self.weights)
        for gene, row in self.expression.iterrows():
            fresh = build_spatial_weights(self.locations)
            self.assertAlmostEqual(morans_i(row.to_numpy(), fresh), results['moran'][gene], delta=1e-12)
            self.assertAlmostEqual(gearys_c(row.to_numpy(), fresh), results['geary'][gene], delta=1e-12)

    def test_vectorized_matches_per_gene(self):
        expression = self.expression.copy()
        expression.iloc[2] = 0.0
        vectorized = calculate_spatial_autocorr(expression, self.weights, chunk_size=3)
        per_gene = calculate_spatial_autocorr(expression, self.weights, vectorized=False)
        for method in ('moran', 'geary'):
            for gene in expression.index:
                a, b = vectorized[method][gene], per_gene[method][gene]
                if isinstance(a, Undefined):
                    self.assertEqual(a, b)
                else:
                    self.assertAlmostEqual(a, b, delta=1e-9)

    def test_parallel_matches_serial(self):
        serial = calculate_spatial_autocorr(self.expression, self.weights)
        threaded = calculate_spatial_autocorr(self.expression, self.weights, n_jobs=4,
                                              backend='threads', chunk_size=2)
        pd.testing.assert_series_equal(serial['moran'].defined(), threaded['moran'].defined(),
                                      check_exact=False, atol=1e-12)
        pd.testing.assert_series_equal(serial['geary'].defined(), threaded['geary'].defined(),
                                      check_exact=False, atol=1e-12)

    def test_single_method(self):
        results = calculate_spatial_autocorr(self.expression, self.weights, methods='geary')
        self.assertEqual(['geary'], list(results))
        self.assertFalse(results['geary'].higher_is_clustered)
        with self.assertRaises(InvalidInputError):
            calculate_spatial_autocorr(self.expression, self.weights, methods=('moran', 'lisa'))

    def test_permutations(self):
        results = calculate_spatial_autocorr(self.expression, self.weights, n_perms=19, seed=4)
        table = results['moran'].to_frame()
        self.assertIn('pval', table)
        self.assertIn('pval_adj', table)
        self.assertTrue(((table['pval'] > 0) & (table['pval'] <= 1)).all())
        self.assertTrue((table['pval_adj'] >= table['pval']).all())
        again = calculate_spatial_autocorr(self.expression, self.weights, n_perms=19, seed=4)
        pd.testing.assert_series_equal(results['geary'].pvalues(), again['geary'].pvalues())

    def test_shape_mismatch(self):
        with self.assertRaises(InvalidInputError):
            calculate_spatial_autocorr(self.expression.iloc[:, :20], self.weights)

    def test_duplicate_genes(self):
        expression = self.expression.rename(index={'gene1': 'gene0'})
        with self.assertRaises(InvalidInputError):
            calculate_spatial_autocorr(expression, self.weights)

    def test_columns_reordered_to_weights(self):
        shuffled = self.expression[self.expression.columns[::-1]]
        expected = calculate_spatial_autocorr(self.expression, self.weights)
        results = calculate_spatial_autocorr(shuffled, self.weights)
        pd.testing.assert_series_equal(expected['moran'].defined(), results['moran'].defined(),
                                      check_exact=False, atol=1e-12)

        renamed = self.expression.rename(columns={'spot0': 'elsewhere'})
        with self.assertLogs('spatialautocorr.spatial.autocorr', level='ERROR'):
            with self.assertRaises(InvalidInputError):
                calculate_spatial_autocorr(renamed, self.weights)

    def test_zero_weights(self):
        weights = SpatialWeights.from_matrix(np.zeros((25, 25)))
        results = calculate_spatial_autocorr(self.expression, weights)
        self.assertEqual(8, len(results['moran'].undefined_genes))
        self.assertIn('sum to zero', results['moran']['gene0'].reason)


class TestAutocorrelationResult(TestMixin, TestCase):
    def test_from_frame(self):
        result = AutocorrelationResult('moran', {'a': 0.5, 'b': Undefined('b', 'constant')}, 10)
        rebuilt = AutocorrelationResult.from_frame(result.to_frame(), 'moran', 10)
        self.assertEqual(0.5, rebuilt['a'])
        self.assertEqual(Undefined('b', 'constant'), rebuilt['b'])
        self.assertAlmostEqual(-1 / 9, rebuilt.expected)


class TestCalculateSpatialStats(TestMixin, TestCase):
    def setUp(self):
        super().setUp()
        locations = grid_locations(4)
        X = np.column_stack([locations[:, 0], np.ones(16), np.random.default_rng(5).random(16)])
        self.adata = AnnData(X=X)
        self.adata.obs_names = [f"spot{j}" for j in range(16)]
        self.adata.var_names = ['gradient', 'flat', 'noise']
        self.adata.obs['array_row'] = locations[:, 0]
        self.adata.obs['array_col'] = locations[:, 1]

    def test_stores_results(self):
        results = calculate_spatial_stats(self.adata)
        self.assertIn('spatial_autocorr', self.adata.uns)
        table = self.adata.uns['spatial_autocorr']
        self.assertEqual(['gradient', 'flat', 'noise'], table.index.tolist())
        self.assertIn('moranI', table)
        self.assertIn('gearyC', table)
        self.assertFalse(table.loc['flat', 'moran_defined'])
        self.assertTrue(np.isnan(self.adata.var.loc['flat', 'moranI']))
        self.assertGreater(self.adata.var.loc['gradient', 'moranI'], 0.5)
        self.assertIsInstance(results['geary']['flat'], Undefined)

    def test_layer_and_genes(self):
        self.adata.layers['scaled'] = self.adata.X * 2
        results = calculate_spatial_stats(self.adata, layer='scaled', genes=['gradient', 'noise'])
        self.assertEqual(['gradient', 'noise'], list(results['moran']))
        with self.assertRaises(InvalidInputError):
            calculate_spatial_stats(self.adata, layer='missing')
