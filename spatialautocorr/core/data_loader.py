import logging
from pathlib import Path

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse

from spatialautocorr.errors import InvalidInputError
from spatialautocorr.spatial.weights import get_array_coordinates

logger = logging.getLogger('spatialautocorr.core.data_loader')

DATA_FORMATS = ('csv', 'anndata')

def _separator(path, sep):
    if sep is not None:
        return sep
    return '\t' if Path(path).suffix.lower() in ('.tsv', '.txt') else ','

def _read_table(path, sep, index_col, **kwargs):
    sep = _separator(path, sep)
    if isinstance(index_col, int) and 'dtype' not in kwargs:
        # Keep identifiers such as "007" as written
        header = pd.read_csv(path, sep=sep, nrows=0).columns
        kwargs['dtype'] = {header[index_col]: str}
    return pd.read_csv(path, sep=sep, index_col=index_col, **kwargs)

def load_expression(path, sep=None, index_col=0, **kwargs):
    """
    Read a genes x locations expression matrix from a delimited text file
    
    Parameters
    ----------
    path : str or Path
        Path to the file. The first column holds gene identifiers, the
        header holds location identifiers
    sep : str, optional
        Separator. Inferred from the file extension if None
    index_col : int, optional
        Column holding gene identifiers
    **kwargs
        Additional arguments to pass to pandas.read_csv
    
    Returns
    -------
    pandas.DataFrame
        Expression matrix with genes as index and locations as columns
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expression file not found: {path}")
    expression = _read_table(path, sep, index_col, **kwargs)
    expression.index = expression.index.astype(str)
    expression.columns = expression.columns.astype(str)
    non_numeric = [col for col in expression.columns if not pd.api.types.is_numeric_dtype(expression[col])]
    if non_numeric:
        raise InvalidInputError(f"Expression matrix has non-numeric columns: {', '.join(non_numeric[:5])}")
    logger.info(f"Loaded expression matrix with {expression.shape[0]} genes and {expression.shape[1]} locations")
    return expression

def load_locations(path, coord_columns=('array_row', 'array_col'), sep=None, index_col=0, **kwargs):
    """
    Read a location table from a delimited text file
    
    Parameters
    ----------
    path : str or Path
        Path to the file, one row per location
    coord_columns : tuple of str, optional
        Columns holding the array row and column indices
    sep : str, optional
        Separator. Inferred from the file extension if None
    index_col : int, optional
        Column holding location identifiers
    **kwargs
        Additional arguments to pass to pandas.read_csv
    
    Returns
    -------
    pandas.DataFrame
        Two coordinate columns indexed by location identifier
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Location file not found: {path}")
    table = _read_table(path, sep, index_col, **kwargs)
    table.index = table.index.astype(str)
    coord_columns = list(coord_columns)
    missing = [col for col in coord_columns if col not in table.columns]
    if missing:
        logger.error(f"Coordinate columns {missing} not found in {path}")
        raise InvalidInputError(f"Coordinate columns {missing} not found in {path}")
    if not table.index.is_unique:
        logger.error(f"Location identifiers in {path} are not unique")
        raise InvalidInputError("Location identifiers are not unique")
    logger.info(f"Loaded {table.shape[0]} locations using columns {coord_columns}")
    return table[coord_columns].astype(float)

def align_locations(expression, locations):
    """
    Order expression columns like the location table
    
    Parameters
    ----------
    expression : pandas.DataFrame
        Genes x locations
    locations : pandas.DataFrame
        Location table indexed by location identifier
    
    Returns
    -------
    tuple
        (expression, locations) restricted to shared locations, in the same order
    """
    missing = locations.index.difference(expression.columns)
    if len(missing) > 0:
        logger.error(f"{len(missing)} locations have no expression values")
        raise InvalidInputError(f"{len(missing)} locations have no expression values (e.g. {missing[0]})")
    extra = expression.columns.difference(locations.index)
    if len(extra) > 0:
        logger.warning(f"Dropping {len(extra)} expression columns without coordinates")
    return expression.loc[:, locations.index], locations

def filter_expression(expression, remove_duplicates=True, remove_zero=True):
    """
    Remove duplicated gene identifiers and genes without any expression
    
    Parameters
    ----------
    expression : pandas.DataFrame
        Genes x locations
    remove_duplicates : bool, optional
        Keep only the first row of each duplicated gene identifier
    remove_zero : bool, optional
        Drop genes that are zero at every location
    
    Returns
    -------
    pandas.DataFrame
        Filtered expression matrix
    """
    n_genes = expression.shape[0]
    if remove_duplicates:
        duplicated = expression.index.duplicated(keep='first')
        if duplicated.any():
            logger.info(f"Removing {int(duplicated.sum())} duplicated gene identifiers")
            expression = expression[~duplicated]
    if remove_zero:
        nonzero = (expression != 0).any(axis=1)
        if not nonzero.all():
            logger.info(f"Removing {int((~nonzero).sum())} genes with zero expression everywhere")
            expression = expression[nonzero]
    logger.info(f"Kept {expression.shape[0]} out of {n_genes} genes")
    return expression

def load_data(expression_path, locations_path=None, format='csv', layer=None,
              coord_columns=('array_row', 'array_col'), filter_genes=True, **kwargs):
    """
    Load an expression matrix and its location table
    
    Parameters
    ----------
    expression_path : str or Path
        Expression CSV/TSV (genes x locations) or .h5ad file
    locations_path : str or Path, optional
        Location table. Required for the 'csv' format
    format : str, optional
        Options: 'csv', 'anndata'
    layer : str, optional
        AnnData layer holding the (variance-stabilized) expression
    coord_columns : tuple of str, optional
        Columns holding the array row and column indices
    filter_genes : bool, optional
        Whether to run filter_expression
    **kwargs
        Additional arguments for the CSV readers
    
    Returns
    -------
    tuple
        (expression, locations) aligned on location identifiers
    """
    logger.info(f"Loading data from {expression_path} (format: {format})")
    if format == 'csv':
        if locations_path is None:
            raise InvalidInputError("A location table is required for the 'csv' format")
        expression = load_expression(expression_path, **kwargs)
        locations = load_locations(locations_path, coord_columns=coord_columns, **kwargs)
    elif format == 'anndata':
        adata = sc.read_h5ad(expression_path)
        if not adata.var_names.is_unique:
            logger.warning("Variable names are not unique. Making them unique.")
            adata.var_names_make_unique()
        X = adata.layers[layer] if layer is not None else adata.X
        X = X.toarray() if sparse.issparse(X) else np.asarray(X)
        expression = pd.DataFrame(X.T, index=adata.var_names.astype(str), columns=adata.obs_names.astype(str))
        if locations_path is not None:
            locations = load_locations(locations_path, coord_columns=coord_columns, **kwargs)
        else:
            locations = get_array_coordinates(adata, coord_keys=coord_columns)
            locations.index = locations.index.astype(str)
    else:
        raise ValueError(f"Unsupported data format: {format}")
    
    expression, locations = align_locations(expression, locations)
    if filter_genes:
        expression = filter_expression(expression)
    return expression, locations
