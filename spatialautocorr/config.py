import copy
import json
import logging
from pathlib import Path

import yaml

logger = logging.getLogger('spatialautocorr.config')

def read_config(config_path):
    """
    Read a configuration file in YAML or JSON format
    
    Parameters
    ----------
    config_path : str or Path
        Path to the configuration file
    
    Returns
    -------
    dict
        Configuration dictionary
    """
    config_path = Path(config_path)
    
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    
    suffix = config_path.suffix.lower()
    
    if suffix == '.yaml' or suffix == '.yml':
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    elif suffix == '.json':
        with open(config_path, 'r') as f:
            config = json.load(f)
    else:
        raise ValueError(f"Unsupported configuration file format: {suffix}")
    
    return config or {}

def validate_config(config):
    """
    Validate a configuration dictionary
    
    Parameters
    ----------
    config : dict
        Configuration dictionary
    
    Returns
    -------
    bool
        True if configuration is valid
    
    Raises
    ------
    ValueError
        If configuration is invalid
    """
    required_sections = ['data', 'weights', 'statistics']
    
    for section in required_sections:
        if section not in config:
            raise ValueError(f"Missing required configuration section: {section}")
    if not config['data'].get('expression_path'):
        raise ValueError("Missing required parameter 'expression_path' in data section")
    if config['data'].get('format', 'csv') == 'csv' and not config['data'].get('locations_path'):
        raise ValueError("Missing required parameter 'locations_path' in data section")
    
    method = config['weights'].get('method', 'adjacency')
    if method not in ('adjacency', 'knn', 'inverse_distance'):
        raise ValueError(f"Invalid weights method: {method}")
    if config['weights'].get('grid', 'square') not in ('square', 'hex'):
        raise ValueError(f"Invalid grid layout: {config['weights']['grid']}")
    
    methods = config['statistics'].get('methods', ['moran', 'geary'])
    if not methods:
        raise ValueError("At least one statistic must be listed in statistics.methods")
    for name in methods:
        if name not in ('moran', 'geary'):
            raise ValueError(f"Invalid statistic: {name}")
    if config['statistics'].get('n_perms', 0) < 0:
        raise ValueError("statistics.n_perms must be non-negative")
    
    return True

def update_config(config, overrides):
    """
    Update a configuration dictionary with override values
    
    Parameters
    ----------
    config : dict
        Original configuration dictionary
    overrides : dict
        Dictionary with override values
    
    Returns
    -------
    dict
        Updated configuration dictionary
    """
    updated_config = copy.deepcopy(config)
    
    def _update_dict(d, u):
        for k, v in u.items():
            if isinstance(v, dict) and k in d and isinstance(d[k], dict):
                d[k] = _update_dict(d[k], v)
            else:
                d[k] = v
        return d
    
    return _update_dict(updated_config, overrides)

def write_config(config, output_path):
    """
    Write a configuration dictionary to a file
    
    Parameters
    ----------
    config : dict
        Configuration dictionary
    output_path : str or Path
        Path to write the configuration file
    
    Returns
    -------
    Path
        Path to the written configuration file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    
    suffix = output_path.suffix.lower()
    
    if suffix == '.yaml' or suffix == '.yml':
        with open(output_path, 'w') as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    elif suffix == '.json':
        with open(output_path, 'w') as f:
            json.dump(config, f, indent=2)
    else:
        raise ValueError(f"Unsupported configuration file format: {suffix}")
    
    return output_path

def get_parameter_defaults():
    """
    Get default parameter values for all pipeline components
    
    Returns
    -------
    dict
        Dictionary with default parameter values
    """
    defaults = {
        'data': {
            'expression_path': '',
            'locations_path': '',
            'format': 'csv',
            'layer': None,
            'coord_columns': ['array_row', 'array_col'],
            'filter_genes': True
        },
        'weights': {
            'method': 'adjacency',
            'radius': None,
            'n_neighbors': 6,
            'metric': 'euclidean',
            'transform': 'binary',
            'symmetric': True,
            'on_coincident': 'raise',
            'grid': 'square'
        },
        'statistics': {
            'methods': ['moran', 'geary'],
            'n_perms': 0,
            'seed': 0,
            'n_jobs': 1,
            'backend': 'threads',
            'chunk_size': 500
        },
        'enrichment': {
            'transform': 'rank',
            'orientation': 'higher_is_clustered'
        },
        'visualization': {
            'create_figures': True,
            'n_top_genes': 20,
            'figsize': [10, 8],
            'dpi': 300
        },
        'output': {
            'save_formats': ['csv'],
            'save_enrichment': True
        }
    }
    
    return defaults

def get_parameter_descriptions():
    """
    Get descriptions of all configurable parameters
    
    Returns
    -------
    dict
        Dictionary with parameter descriptions
    """
    descriptions = {
        'data': {
            'expression_path': 'Path to the expression matrix (genes x locations CSV/TSV, or .h5ad)',
            'locations_path': 'Path to the location table (required for csv)',
            'format': 'Format of the input data (csv, anndata)',
            'layer': 'AnnData layer holding variance-stabilized expression',
            'coord_columns': 'Columns with the array row and column indices of each location',
            'filter_genes': 'Whether to drop duplicated gene identifiers and all-zero genes'
        },
        'weights': {
            'method': 'Weighting policy (adjacency, knn, inverse_distance)',
            'radius': 'Neighborhood radius for adjacency, optional cutoff for inverse_distance',
            'n_neighbors': 'Number of neighbors for knn',
            'metric': 'Distance function (euclidean, manhattan, chebyshev)',
            'transform': 'Weight transform (binary, row)',
            'symmetric': 'Whether to symmetrize knn weights',
            'on_coincident': 'Coincident locations under inverse_distance (raise, skip, unit)',
            'grid': 'Layout of the array indices (square, hex for Visium-style arrays)'
        },
        'statistics': {
            'methods': 'Statistics to compute (moran, geary)',
            'n_perms': 'Number of permutations for pseudo p-values (0 disables them)',
            'seed': 'Random seed for permutations',
            'n_jobs': 'Number of parallel jobs over chunks of genes',
            'backend': 'Parallel backend (serial, threads, processes)',
            'chunk_size': 'Number of genes scored together'
        },
        'enrichment': {
            'transform': 'Transform applied before enrichment (rank, sign, none)',
            'orientation': 'Orientation of enrichment values (higher_is_clustered, lower_is_significant)'
        },
        'visualization': {
            'create_figures': 'Whether to create figures',
            'n_top_genes': 'Number of genes shown in ranking plots',
            'figsize': 'Figure size [width, height]',
            'dpi': 'DPI for saved figures'
        },
        'output': {
            'save_formats': 'Formats for result tables (csv, json)',
            'save_enrichment': 'Whether to save enrichment input matrices'
        }
    }
    
    return descriptions
