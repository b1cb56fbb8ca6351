import logging
import numpy as np
import pandas as pd
from scipy import sparse
from scipy.spatial import cKDTree

from spatialautocorr.errors import InvalidInputError

logger = logging.getLogger('spatialautocorr.spatial.weights')

WEIGHT_METHODS = ('adjacency', 'knn', 'inverse_distance')
METRICS = {'euclidean': 2, 'manhattan': 1, 'chebyshev': np.inf}
TRANSFORMS = ('binary', 'row')
COINCIDENT_POLICIES = ('raise', 'skip', 'unit')
GRIDS = ('square', 'hex')
# Row spacing of a hex array in units of the column index (Visium: columns step by 2 within a row)
HEX_ROW_SCALE = np.sqrt(3)

class SpatialWeights:
    """
    Immutable spatial weight matrix shared by every per-gene computation
    
    The matrix is stored as a CSR sparse matrix with a zero diagonal. The
    total weight and the row/column sums are computed once here and reused
    by the statistics kernels.
    
    Parameters
    ----------
    matrix : scipy.sparse matrix or array-like
        Square N x N matrix of non-negative weights
    index : array-like, optional
        Location identifiers, one per row/column
    method : str, optional
        Name of the policy that produced the matrix, kept for logging
    """
    
    def __init__(self, matrix, index=None, method='custom'):
        if sparse.issparse(matrix):
            matrix = sparse.csr_matrix(matrix, dtype=np.float64)
        else:
            matrix = np.asarray(matrix, dtype=np.float64)
            if matrix.ndim != 2:
                raise InvalidInputError(f"Weight matrix must be 2-dimensional, got {matrix.ndim} dimensions")
            matrix = sparse.csr_matrix(matrix)
        n_rows, n_cols = matrix.shape
        if n_rows != n_cols:
            raise InvalidInputError(f"Weight matrix must be square, got shape {matrix.shape}")
        if n_rows < 2:
            raise InvalidInputError(f"At least 2 locations are required, got {n_rows}")
        if not np.all(np.isfinite(matrix.data)):
            raise InvalidInputError("Weight matrix contains non-finite values")
        if np.any(matrix.data < 0):
            logger.error(f"Weight matrix contains {int(np.sum(matrix.data < 0))} negative entries")
            raise InvalidInputError("Weight matrix contains negative values")
        matrix = matrix.tolil()
        matrix.setdiag(0)
        matrix = matrix.tocsr()
        matrix.eliminate_zeros()
        matrix.sort_indices()
        
        if index is None:
            index = pd.RangeIndex(n_rows)
        else:
            index = pd.Index(index)
            if len(index) != n_rows:
                raise InvalidInputError(
                    f"Got {len(index)} location identifiers for a {n_rows} x {n_rows} weight matrix"
                )
        
        self._matrix = matrix
        self.index = index
        self.method = method
        self.n = n_rows
        self.total = float(matrix.sum())
        self.row_sums = np.asarray(matrix.sum(axis=1)).ravel()
        self.col_sums = np.asarray(matrix.sum(axis=0)).ravel()
        self.row_sums.flags.writeable = False
        self.col_sums.flags.writeable = False
    
    @classmethod
    def from_matrix(cls, matrix, index=None):
        """Wrap a user-supplied dense or sparse weight matrix"""
        return cls(matrix, index=index, method='custom')
    
    @property
    def matrix(self):
        return self._matrix
    
    @property
    def nnz(self):
        return self._matrix.nnz
    
    @property
    def is_symmetric(self):
        diff = self._matrix - self._matrix.T
        return diff.nnz == 0 or np.allclose(diff.data, 0)
    
    @property
    def n_isolated(self):
        """Number of locations without any outgoing weight"""
        return int(np.sum(self.row_sums == 0))
    
    def toarray(self):
        return self._matrix.toarray()
    
    def summary(self):
        """
        Summarize the weight matrix
        
        Returns
        -------
        dict
            Number of locations, non-zero entries, total weight,
            mean neighbors per location and isolated locations
        """
        return {
            'method': self.method,
            'n_locations': self.n,
            'nnz': self.nnz,
            'total_weight': self.total,
            'mean_neighbors': self.nnz / self.n,
            'n_isolated': self.n_isolated,
            'symmetric': self.is_symmetric,
        }
    
    def __repr__(self):
        return (f"SpatialWeights(method={self.method!r}, n={self.n}, "
                f"nnz={self.nnz}, total={self.total:g})")

def _validate_coordinates(coords):
    coords = np.asarray(coords, dtype=np.float64)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise InvalidInputError(f"Locations must be an (N, 2) array, got shape {coords.shape}")
    if coords.shape[0] < 2:
        raise InvalidInputError(f"At least 2 locations are required, got {coords.shape[0]}")
    if not np.all(np.isfinite(coords)):
        raise InvalidInputError("Locations contain non-finite coordinates")
    return coords

def _pair_distances(coords, rows, cols, p):
    diff = coords[rows] - coords[cols]
    return np.linalg.norm(diff, ord=p, axis=1)

def _symmetric_pairs(rows, cols, values, n):
    matrix = sparse.coo_matrix(
        (np.concatenate([values, values]),
         (np.concatenate([rows, cols]), np.concatenate([cols, rows]))),
        shape=(n, n),
    )
    return matrix.tocsr()

def _adjacency_weights(coords, radius, p):
    tree = cKDTree(coords)
    pairs = tree.query_pairs(r=radius, p=p, output_type='ndarray')
    n = coords.shape[0]
    if len(pairs) == 0:
        return sparse.csr_matrix((n, n))
    return _symmetric_pairs(pairs[:, 0], pairs[:, 1], np.ones(len(pairs)), n)

def _knn_weights(coords, n_neighbors, p, symmetric):
    n = coords.shape[0]
    if n_neighbors >= n:
        raise InvalidInputError(
            f"n_neighbors ({n_neighbors}) must be smaller than the number of locations ({n})"
        )
    tree = cKDTree(coords)
    _, indices = tree.query(coords, k=n_neighbors + 1, p=p)
    rows = []
    cols = []
    for i, neighbors in enumerate(indices):
        # Drop self; with coincident points self is not always the first hit
        neighbors = [j for j in neighbors if j != i][:n_neighbors]
        rows.extend([i] * len(neighbors))
        cols.extend(neighbors)
    matrix = sparse.csr_matrix(
        (np.ones(len(rows)), (np.asarray(rows), np.asarray(cols))), shape=(n, n)
    )
    if symmetric:
        matrix = matrix.maximum(matrix.T)
    return matrix

def _inverse_distance_weights(coords, radius, p, on_coincident):
    n = coords.shape[0]
    if radius is None:
        rows, cols = np.triu_indices(n, k=1)
    else:
        pairs = cKDTree(coords).query_pairs(r=radius, p=p, output_type='ndarray')
        if len(pairs) == 0:
            return sparse.csr_matrix((n, n))
        rows, cols = pairs[:, 0], pairs[:, 1]
    distances = _pair_distances(coords, rows, cols, p)
    coincident = distances == 0
    if np.any(coincident):
        n_coincident = int(np.sum(coincident))
        if on_coincident == 'raise':
            first = int(rows[coincident][0]), int(cols[coincident][0])
            logger.error(f"Found {n_coincident} pairs of coincident locations (e.g. {first})")
            raise InvalidInputError(
                f"Inverse-distance weights are undefined for {n_coincident} pairs of coincident "
                f"locations (e.g. locations {first[0]} and {first[1]})"
            )
        logger.warning(f"Found {n_coincident} pairs of coincident locations, using policy '{on_coincident}'")
    values = np.zeros_like(distances)
    values[~coincident] = 1.0 / distances[~coincident]
    if on_coincident == 'unit':
        values[coincident] = 1.0
    return _symmetric_pairs(rows, cols, values, n)

def _row_standardize(matrix):
    row_sums = np.asarray(matrix.sum(axis=1)).ravel()
    scale = np.zeros_like(row_sums)
    nonzero = row_sums != 0
    scale[nonzero] = 1.0 / row_sums[nonzero]
    return sparse.diags(scale) @ matrix

def build_spatial_weights(locations, method='adjacency', radius=None, n_neighbors=6,
                          metric='euclidean', transform='binary', symmetric=True,
                          on_coincident='raise', grid='square', index=None):
    """
    Build a spatial weight matrix from 2-D locations
    
    Coordinates are expected to be the discrete row/column indices of the
    sampling array, not rescaled pixel coordinates. On hex arrays such as
    Visium, where a spot at (r, c) touches (r, c±2) and (r±1, c±1), pass
    grid='hex': rows are then scaled by sqrt(3) so that all six neighbors
    lie at distance 2 and the next ring (e.g. (r±2, c)) lies beyond it.
    
    Parameters
    ----------
    locations : array-like or pandas.DataFrame
        (N, 2) coordinates, one row per location. A DataFrame's index is used
        as location identifiers unless `index` is given
    method : str, optional
        Weighting policy. Options: 'adjacency' (binary within `radius`),
        'knn' (binary, `n_neighbors` nearest), 'inverse_distance'
        (1 / distance, optionally only within `radius`)
    radius : float, optional
        Neighborhood radius. For 'adjacency' it defaults to 1.0 on a square
        grid (the four axis-adjacent spots) and to 2.0 with grid='hex' (the
        six hex neighbors). A plain radius of 2.0 on raw Visium indices also
        picks up (r±2, c), giving eight neighbors. 'inverse_distance' has no
        cutoff by default
    n_neighbors : int, optional
        Number of neighbors for 'knn', by default 6
    metric : str, optional
        Distance function. Options: 'euclidean', 'manhattan', 'chebyshev'
    transform : str, optional
        'binary' keeps raw weights, 'row' row-standardizes them
    symmetric : bool, optional
        Symmetrize 'knn' weights with max(W, W.T), by default True
    on_coincident : str, optional
        What 'inverse_distance' does with coincident locations. Options:
        'raise' (InvalidInputError), 'skip' (weight 0), 'unit' (weight 1)
    grid : str, optional
        Layout of the array indices. Options: 'square', 'hex'
    index : array-like, optional
        Location identifiers
    
    Returns
    -------
    SpatialWeights
        Weight matrix with a zero diagonal
    
    Raises
    ------
    InvalidInputError
        If there are fewer than 2 locations, parameters are invalid, or
        locations coincide under 'inverse_distance' with on_coincident='raise'
    """
    if method not in WEIGHT_METHODS:
        raise InvalidInputError(f"Unsupported weight method: {method}. Options: {', '.join(WEIGHT_METHODS)}")
    if metric not in METRICS:
        raise InvalidInputError(f"Unsupported distance metric: {metric}. Options: {', '.join(METRICS)}")
    if transform not in TRANSFORMS:
        raise InvalidInputError(f"Unsupported weight transform: {transform}. Options: {', '.join(TRANSFORMS)}")
    if grid not in GRIDS:
        raise InvalidInputError(f"Unsupported grid layout: {grid}. Options: {', '.join(GRIDS)}")
    if on_coincident not in COINCIDENT_POLICIES:
        raise InvalidInputError(
            f"Unsupported coincident policy: {on_coincident}. Options: {', '.join(COINCIDENT_POLICIES)}"
        )
    if index is None and isinstance(locations, pd.DataFrame):
        index = locations.index
    coords = _validate_coordinates(locations)
    if grid == 'hex':
        coords = coords * np.array([HEX_ROW_SCALE, 1.0])
    p = METRICS[metric]
    
    logger.info(f"Building '{method}' spatial weights for {coords.shape[0]} locations ({metric} distance, {grid} grid)")
    
    if method == 'adjacency':
        if radius is None:
            radius = 2.0 if grid == 'hex' else 1.0
        if radius <= 0:
            raise InvalidInputError(f"radius must be positive, got {radius}")
        matrix = _adjacency_weights(coords, radius, p)
    elif method == 'knn':
        if n_neighbors < 1:
            raise InvalidInputError(f"n_neighbors must be at least 1, got {n_neighbors}")
        matrix = _knn_weights(coords, int(n_neighbors), p, symmetric)
    else:
        if radius is not None and radius <= 0:
            raise InvalidInputError(f"radius must be positive, got {radius}")
        matrix = _inverse_distance_weights(coords, radius, p, on_coincident)
    
    if transform == 'row':
        matrix = _row_standardize(matrix)
    
    weights = SpatialWeights(matrix, index=index, method=method)
    if weights.total == 0:
        logger.warning("Spatial weights are all zero: every statistic will be undefined. "
                       "Consider increasing the radius.")
    elif weights.n_isolated > 0:
        logger.warning(f"{weights.n_isolated} locations have no neighbors")
    logger.info(f"Spatial weights: {weights.nnz} non-zero entries, total weight {weights.total:g}")
    return weights

def get_array_coordinates(adata, coord_keys=('array_row', 'array_col'), spatial_key='spatial'):
    """
    Get the array row/column coordinates of an AnnData object
    
    Parameters
    ----------
    adata : AnnData
        AnnData object with locations as observations
    coord_keys : tuple of str, optional
        Columns of adata.obs holding the array row and column
    spatial_key : str, optional
        Key in adata.obsm used when the array columns are missing
    
    Returns
    -------
    pandas.DataFrame
        Coordinates indexed by adata.obs_names
    """
    coord_keys = list(coord_keys)
    if all(key in adata.obs for key in coord_keys):
        return adata.obs[coord_keys].astype(float).copy()
    if spatial_key in adata.obsm:
        logger.warning(f"Columns {coord_keys} not found in adata.obs. Using adata.obsm['{spatial_key}'], "
                       "which may hold rescaled pixel coordinates rather than array indices")
        coords = np.asarray(adata.obsm[spatial_key])[:, :2]
        return pd.DataFrame(coords, index=adata.obs_names, columns=coord_keys)
    logger.error("No spatial coordinates found in AnnData object")
    raise InvalidInputError("No spatial coordinates found in AnnData object")

def weights_from_anndata(adata, coord_keys=('array_row', 'array_col'), spatial_key='spatial', **kwargs):
    """
    Build spatial weights from the coordinates stored in an AnnData object
    
    Parameters
    ----------
    adata : AnnData
        AnnData object with locations as observations
    coord_keys : tuple of str, optional
        Columns of adata.obs holding the array row and column
    spatial_key : str, optional
        Key in adata.obsm used when the array columns are missing
    **kwargs
        Additional arguments for build_spatial_weights
    
    Returns
    -------
    SpatialWeights
    """
    coords = get_array_coordinates(adata, coord_keys=coord_keys, spatial_key=spatial_key)
    return build_spatial_weights(coords, **kwargs)

def build_spatial_graph(adata, n_neighs=6, coord_type='generic', **kwargs):
    """
    Build a squidpy spatial neighbors graph
    
    Parameters
    ----------
    adata : AnnData
        AnnData object with spatial coordinates in adata.obsm['spatial']
    n_neighs : int, optional
        Number of neighbors, by default 6
    coord_type : str, optional
        Type of coordinates, by default 'generic'
    **kwargs : dict
        Additional arguments to pass to squidpy.gr.spatial_neighbors
    
    Returns
    -------
    adata : AnnData
        AnnData object with adata.obsp['spatial_connectivities']
    """
    import squidpy as sq
    
    try:
        logger.info(f"Building squidpy spatial neighbors graph with {n_neighs} neighbors")
        sq.gr.spatial_neighbors(adata, n_neighs=n_neighs, coord_type=coord_type,
                                spatial_key="spatial", **kwargs)
        return adata
    except Exception as e:
        logger.error(f"Error building spatial neighbors graph: {str(e)}")
        raise

def weights_from_spatial_graph(adata, key='spatial_connectivities'):
    """
    Wrap an existing spatial neighbors graph (e.g. from squidpy) as SpatialWeights
    
    Parameters
    ----------
    adata : AnnData
        AnnData object with a graph in adata.obsp
    key : str, optional
        Key of the graph in adata.obsp
    
    Returns
    -------
    SpatialWeights
    """
    if key not in adata.obsp:
        logger.error(f"No spatial neighbors graph found in adata.obsp['{key}']. Run build_spatial_graph first.")
        raise InvalidInputError(f"No spatial neighbors graph found in adata.obsp['{key}']. "
                                "Run build_spatial_graph first.")
    weights = SpatialWeights(adata.obsp[key], index=adata.obs_names, method=key)
    logger.info(f"Using spatial graph '{key}': {weights.nnz} non-zero entries")
    return weights
