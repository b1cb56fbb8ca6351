import os
from unittest import TestCase

from spatialautocorr.config import (
    get_parameter_defaults,
    get_parameter_descriptions,
    read_config,
    update_config,
    validate_config,
    write_config,
)

from .mixins import TestMixin


class TestConfig(TestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.config = update_config(get_parameter_defaults(), {
            'data': {'expression_path': 'expression.csv', 'locations_path': 'locations.csv'},
        })

    def test_defaults_are_described(self):
        defaults = get_parameter_defaults()
        descriptions = get_parameter_descriptions()
        self.assertEqual(set(defaults), set(descriptions))
        for section, params in defaults.items():
            self.assertEqual(set(params), set(descriptions[section]))

    def test_validate(self):
        self.assertTrue(validate_config(self.config))
        with self.assertRaises(ValueError):
            validate_config(get_parameter_defaults())
        with self.assertRaises(ValueError):
            validate_config(update_config(self.config, {'weights': {'method': 'gaussian'}}))
        with self.assertRaises(ValueError):
            validate_config(update_config(self.config, {'statistics': {'methods': ['lisa']}}))
        with self.assertRaises(ValueError):
            validate_config(update_config(self.config, {'weights': {'grid': 'triangle'}}))
        self.assertTrue(validate_config(update_config(self.config, {'weights': {'grid': 'hex'}})))
        config = dict(self.config)
        del config['weights']
        with self.assertRaises(ValueError):
            validate_config(config)

    def test_anndata_needs_no_locations(self):
        config = update_config(self.config, {'data': {'format': 'anndata', 'locations_path': ''}})
        self.assertTrue(validate_config(config))

    def test_update_is_deep(self):
        updated = update_config(self.config, {'weights': {'method': 'knn'}})
        self.assertEqual('knn', updated['weights']['method'])
        self.assertEqual('euclidean', updated['weights']['metric'])
        self.assertEqual('adjacency', self.config['weights']['method'])

    def test_write_and_read(self):
        for name in ('config.yaml', 'config.json'):
            path = write_config(self.config, os.path.join(self.temp_dir, name))
            self.assertEqual(self.config, read_config(path))
        with self.assertRaises(ValueError):
            write_config(self.config, os.path.join(self.temp_dir, 'config.ini'))
        with self.assertRaises(FileNotFoundError):
            read_config(os.path.join(self.temp_dir, 'missing.yaml'))
