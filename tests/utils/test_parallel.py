from unittest import TestCase

import numpy as np

from spatialautocorr.utils.parallel import parallelize, spawn_seeds, split_chunks

from ..mixins import TestMixin


def _power(x, exponent=2):
    return x ** exponent


class TestParallel(TestMixin, TestCase):
    def test_serial_and_threads_keep_order(self):
        items = list(range(20))
        expected = [x ** 3 for x in items]
        self.assertEqual(expected, parallelize(_power, items, n_jobs=1, exponent=3))
        self.assertEqual(expected, parallelize(_power, items, n_jobs=4, backend='threads', exponent=3))

    def test_empty(self):
        self.assertEqual([], parallelize(_power, [], n_jobs=4))

    def test_invalid_backend(self):
        with self.assertRaises(ValueError):
            parallelize(_power, [1, 2], backend='dask')

    def test_split_chunks(self):
        chunks = split_chunks(7, 3)
        self.assertEqual([slice(0, 3), slice(3, 6), slice(6, 7)], chunks)
        self.assertEqual([], split_chunks(0, 3))
        with self.assertRaises(ValueError):
            split_chunks(7, 0)

    def test_spawn_seeds(self):
        first = [np.random.default_rng(s).random() for s in spawn_seeds(42, 3)]
        second = [np.random.default_rng(s).random() for s in spawn_seeds(42, 3)]
        self.assertEqual(first, second)
        self.assertEqual(3, len(set(first)))
