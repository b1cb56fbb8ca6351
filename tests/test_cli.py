import logging
import os
from unittest import TestCase

import pandas as pd
from click.testing import CliRunner

from spatialautocorr.cli import cli
from spatialautocorr.config import get_parameter_defaults, read_config, update_config, write_config

from .mixins import TestMixin, grid_locations, random_expression


class TestCli(TestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.runner = CliRunner()
        locations = grid_locations(5)
        expression = random_expression(6, 25)
        expression.loc['gradient'] = locations[:, 1]
        expression.loc['flat'] = 3.0
        self.expression_path = os.path.join(self.temp_dir, 'expression.csv')
        self.locations_path = os.path.join(self.temp_dir, 'locations.csv')
        expression.to_csv(self.expression_path)
        pd.DataFrame(locations, index=expression.columns, columns=['array_row', 'array_col']).to_csv(
            self.locations_path)

        config = update_config(get_parameter_defaults(), {
            'visualization': {'dpi': 50, 'figsize': [4, 3], 'n_top_genes': 5},
            'output': {'save_formats': ['csv', 'json']},
        })
        self.config_path = str(write_config(config, os.path.join(self.temp_dir, 'config.yaml')))
        self.output_dir = os.path.join(self.temp_dir, 'results')

    def tearDown(self):
        logger = logging.getLogger('spatialautocorr')
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()
        super().tearDown()

    def test_init_config(self):
        path = os.path.join(self.temp_dir, 'defaults.yaml')
        result = self.runner.invoke(cli, ['init-config', path])
        self.assertEqual(0, result.exit_code, result.output)
        self.assertEqual(get_parameter_defaults(), read_config(path))

    def test_run(self):
        result = self.runner.invoke(cli, [
            'run', self.expression_path, self.locations_path,
            '-c', self.config_path, '-o', self.output_dir, '--n-perms', '9',
        ])
        self.assertEqual(0, result.exit_code, result.output)
        self.assertIn("Moran's I: 7 genes scored, 1 undefined", result.output)

        data_dir = os.path.join(self.output_dir, 'data')
        for name in ('moran.csv', 'geary.csv', 'moran.json', 'moran_enrichment_input.csv',
                     'geary_enrichment_input.csv', 'metadata.json'):
            self.assertTrue(os.path.exists(os.path.join(data_dir, name)), name)
        self.assertTrue(os.path.exists(os.path.join(self.output_dir, 'figures', 'moran_ranking.png')))

        table = pd.read_csv(os.path.join(data_dir, 'moran.csv'), index_col=0)
        self.assertFalse(table.loc['flat', 'defined'])
        self.assertIn('pval', table)
        with open(os.path.join(data_dir, 'scoring.log')) as f:
            self.assertIn("undefined for 1 genes: flat", f.read())
        used = read_config(os.path.join(self.output_dir, 'config_used.yaml'))
        self.assertEqual(9, used['statistics']['n_perms'])

    def test_run_requires_locations(self):
        result = self.runner.invoke(cli, ['run', self.expression_path, '-o', self.output_dir])
        self.assertNotEqual(0, result.exit_code)

    def test_visualize(self):
        result = self.runner.invoke(cli, [
            'run', self.expression_path, self.locations_path,
            '-c', self.config_path, '-o', self.output_dir, '--weights', 'knn',
        ])
        self.assertEqual(0, result.exit_code, result.output)

        figures_dir = os.path.join(self.temp_dir, 'figures')
        result = self.runner.invoke(cli, [
            'visualize', os.path.join(self.output_dir, 'data'), '-o', figures_dir, '--dpi', '50',
        ])
        self.assertEqual(0, result.exit_code, result.output)
        self.assertTrue(os.path.exists(os.path.join(figures_dir, 'geary_ranking.png')))
        self.assertTrue(os.path.exists(os.path.join(figures_dir, 'moran_vs_geary.png')))
