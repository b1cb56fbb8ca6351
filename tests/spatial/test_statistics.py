from unittest import TestCase

import numpy as np
from scipy import sparse

from spatialautocorr.errors import DegenerateInputError, InvalidInputError
from spatialautocorr.spatial.statistics import (
    degenerate_reasons,
    expected_value,
    gearys_c,
    morans_i,
    score_matrix,
)
from spatialautocorr.spatial.weights import SpatialWeights, build_spatial_weights

from ..mixins import TestMixin, grid_locations, square_locations


class TestMoranGeary(TestMixin, TestCase):
    def setUp(self):
        super().setUp()
        # Axis-adjacent pairs of the 2x2 grid: (0,1), (0,2), (1,3), (2,3)
        self.square = build_spatial_weights(square_locations(), method='adjacency')

    def test_square_scenario(self):
        x = np.array([1.0, 2.0, 3.0, 4.0])
        # xbar = 2.5, z = [-1.5, -0.5, 0.5, 1.5], denominator = 5, W = 8
        # Moran numerator = 2 * (0.75 - 0.75 - 0.75 + 0.75) = 0
        # Geary numerator = 2 * (1 + 4 + 4 + 1) = 20
        expected_i = (4 / 8) * (0 / 5)
        expected_c = (3 / (2 * 8)) * (20 / 5)
        self.assertAlmostEqual(expected_i, morans_i(x, self.square), delta=1e-9)
        self.assertAlmostEqual(expected_c, gearys_c(x, self.square), delta=1e-9)
        self.assertAlmostEqual(0.75, gearys_c(x, self.square), delta=1e-9)

    def test_checkerboard(self):
        x = np.array([1.0, 0.0, 0.0, 1.0])
        i = morans_i(x, self.square)
        c = gearys_c(x, self.square)
        self.assertLess(i, 0)
        self.assertGreater(c, 1)
        self.assertAlmostEqual(-1.0, i, delta=1e-9)
        self.assertAlmostEqual(1.5, c, delta=1e-9)

    def test_constant_is_degenerate(self):
        for x in (np.zeros(4), np.full(4, 0.1), np.full(4, 7.0)):
            with self.assertRaises(DegenerateInputError):
                morans_i(x, self.square)
            with self.assertRaises(DegenerateInputError):
                gearys_c(x, self.square)

    def test_zero_weights_are_degenerate(self):
        weights = SpatialWeights.from_matrix(np.zeros((4, 4)))
        x = np.array([1.0, 2.0, 3.0, 4.0])
        with self.assertRaises(DegenerateInputError):
            morans_i(x, weights)
        with self.assertRaises(DegenerateInputError):
            gearys_c(x, weights)

    def test_invalid_vector(self):
        with self.assertRaises(InvalidInputError):
            morans_i(np.arange(3.0), self.square)
        with self.assertRaises(InvalidInputError):
            gearys_c(np.array([1.0, np.nan, 2.0, 3.0]), self.square)

    def test_gradient(self):
        values = {}
        for m in (5, 10):
            locations = grid_locations(m)
            weights = build_spatial_weights(locations, method='adjacency')
            x = locations[:, 1]
            values[m] = morans_i(x, weights)
            self.assertAlmostEqual(3 / m ** 2, gearys_c(x, weights), delta=1e-9)
        self.assertAlmostEqual(0.75, values[5], delta=1e-9)
        self.assertAlmostEqual(8 / 9, values[10], delta=1e-9)
        self.assertGreater(values[10], values[5])

    def test_not_clamped(self):
        matrix = np.zeros((5, 5))
        matrix[0, 1] = matrix[1, 0] = 1
        x = np.array([1.0, 1.0, 0.0, 0.0, 0.0])
        self.assertAlmostEqual(1.5, morans_i(x, matrix), delta=1e-9)

    def test_permutation_invariance(self):
        rng = np.random.default_rng(1)
        locations = rng.random((30, 2)) * 10
        x = rng.normal(size=30)
        weights = build_spatial_weights(locations, method='inverse_distance')
        perm = rng.permutation(30)
        permuted = build_spatial_weights(locations[perm], method='inverse_distance')
        self.assertAlmostEqual(morans_i(x, weights), morans_i(x[perm], permuted), delta=1e-9)
        self.assertAlmostEqual(gearys_c(x, weights), gearys_c(x[perm], permuted), delta=1e-9)

        dense = weights.toarray()
        relabelled = dense[np.ix_(perm, perm)]
        self.assertAlmostEqual(morans_i(x, dense), morans_i(x[perm], relabelled), delta=1e-9)

    def test_dense_and_sparse_weights(self):
        x = np.array([3.0, 1.0, 4.0, 1.5])
        dense = self.square.toarray()
        self.assertAlmostEqual(morans_i(x, self.square), morans_i(x, dense))
        self.assertAlmostEqual(gearys_c(x, self.square), gearys_c(x, sparse.csr_matrix(dense)))

    def test_expected_value(self):
        self.assertAlmostEqual(-1 / 9, expected_value('moran', 10))
        self.assertEqual(1.0, expected_value('geary', 10))
        with self.assertRaises(InvalidInputError):
            expected_value('getis', 10)


class TestScoreMatrix(TestMixin, TestCase):
    def setUp(self):
        super().setUp()
        rng = np.random.default_rng(2)
        self.X = rng.normal(size=(12, 25))
        # Asymmetric weights exercise the row/column sums of the Geary kernel
        matrix = rng.random((25, 25)) * (rng.random((25, 25)) < 0.2)
        self.weights = SpatialWeights.from_matrix(matrix)

    def test_matches_single_gene(self):
        scores = score_matrix(self.X, self.weights)
        for g, x in enumerate(self.X):
            self.assertAlmostEqual(morans_i(x, self.weights), scores['moran']['score'][g], delta=1e-9)
            self.assertAlmostEqual(gearys_c(x, self.weights), scores['geary']['score'][g], delta=1e-9)
        self.assertNotIn('pval', scores['moran'])

    def test_degenerate_rows(self):
        X = self.X.copy()
        X[3] = 2.0
        X[5, 0] = np.inf
        scores = score_matrix(X, self.weights, methods=('moran',))
        self.assertTrue(np.isnan(scores['moran']['score'][3]))
        self.assertTrue(np.isnan(scores['moran']['score'][5]))
        self.assertEqual(10, np.sum(np.isfinite(scores['moran']['score'])))

        reasons = degenerate_reasons(X, self.weights)
        self.assertIn('constant', reasons[3])
        self.assertIn('non-finite', reasons[5])
        self.assertIsNone(reasons[0])

    def test_shape_mismatch(self):
        with self.assertRaises(InvalidInputError):
            score_matrix(self.X[:, :10], self.weights)

    def test_permutation_pvalues(self):
        locations = grid_locations(6)
        weights = build_spatial_weights(locations)
        rng = np.random.default_rng(3)
        X = np.vstack([locations[:, 0] + locations[:, 1], rng.normal(size=36)])
        scores = score_matrix(X, weights, n_perms=99, seed=0)
        for method in ('moran', 'geary'):
            pvals = scores[method]['pval']
            self.assertTrue(np.all((pvals > 0) & (pvals <= 1)))
            # Smooth gradient beats every permutation
            self.assertAlmostEqual(0.01, pvals[0])

        again = score_matrix(X, weights, n_perms=99, seed=0)
        np.testing.assert_array_equal(scores['moran']['pval'], again['moran']['pval'])
