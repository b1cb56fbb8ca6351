import json
import logging
from pathlib import Path

import pandas as pd

from spatialautocorr.spatial.autocorr import AutocorrelationResult

logger = logging.getLogger('spatialautocorr.utils.io')

SAVE_FORMATS = ('csv', 'json')

def save_results(results, output_dir, save_formats=None, enrichment=None, weights=None):
    """
    Save autocorrelation results
    
    Parameters
    ----------
    results : dict
        Maps method to AutocorrelationResult
    output_dir : str or Path
        Directory to save results
    save_formats : list, optional
        Options: 'csv', 'json'. If None, saves only in 'csv' format
    enrichment : dict, optional
        Maps method to the enrichment input DataFrame
    weights : SpatialWeights, optional
        Weights whose summary is written next to the tables
    
    Returns
    -------
    dict
        Dictionary with paths to saved files
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    
    if save_formats is None:
        save_formats = ['csv']
    for fmt in save_formats:
        if fmt not in SAVE_FORMATS:
            logger.warning(f"Unsupported save format: {fmt}. Skipping.")
    save_formats = [fmt for fmt in save_formats if fmt in SAVE_FORMATS]
    
    saved_paths = {}
    for method, result in results.items():
        table = result.to_frame()
        if 'csv' in save_formats:
            file_path = output_dir / f"{method}.csv"
            table.to_csv(file_path)
            saved_paths[f'{method}_csv'] = file_path
            logger.info(f"Saved {result.label} table to {file_path}")
        if 'json' in save_formats:
            file_path = output_dir / f"{method}.json"
            table.reset_index().to_json(file_path, orient='records', indent=2)
            saved_paths[f'{method}_json'] = file_path
            logger.info(f"Saved {result.label} table to {file_path}")
    
    for method, matrix in (enrichment or {}).items():
        file_path = output_dir / f"{method}_enrichment_input.csv"
        matrix.to_csv(file_path)
        saved_paths[f'{method}_enrichment'] = file_path
        logger.info(f"Saved enrichment input for {method} to {file_path}")
    
    metadata = {
        'methods': list(results),
        'n_locations': {method: result.n_locations for method, result in results.items()},
        'n_perms': {method: result.n_perms for method, result in results.items()},
    }
    if weights is not None:
        metadata['weights'] = weights.summary()
    file_path = output_dir / "metadata.json"
    with open(file_path, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    saved_paths['metadata'] = file_path
    
    return saved_paths

def load_results(output_dir):
    """
    Load result tables written by save_results
    
    Parameters
    ----------
    output_dir : str or Path
        Directory holding metadata.json and the CSV tables
    
    Returns
    -------
    dict
        Maps method to AutocorrelationResult
    """
    output_dir = Path(output_dir)
    metadata_path = output_dir / "metadata.json"
    if not metadata_path.exists():
        raise FileNotFoundError(f"Results metadata not found: {metadata_path}")
    with open(metadata_path, 'r') as f:
        metadata = json.load(f)
    
    results = {}
    for method in metadata['methods']:
        table_path = output_dir / f"{method}.csv"
        if not table_path.exists():
            logger.warning(f"Result table not found: {table_path}")
            continue
        table = pd.read_csv(table_path, index_col=0, dtype={'gene': str, 'reason': str},
                            keep_default_na=False, na_values=[''])
        table['reason'] = table['reason'].fillna('')
        results[method] = AutocorrelationResult.from_frame(
            table, method, metadata['n_locations'][method], n_perms=metadata['n_perms'][method]
        )
        logger.info(f"Loaded {method} results for {len(results[method])} genes")
    return results
