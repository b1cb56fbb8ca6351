"""
Global spatial autocorrelation statistics for gene expression.

Moran's I
    I = (N / W) * sum_ij w_ij (x_i - xbar)(x_j - xbar) / sum_i (x_i - xbar)^2
    
    Roughly in [-1, 1] for common weightings: positive when nearby locations
    have similar values, negative when they alternate. The value is not
    clamped since the range depends on the weights.

Geary's C
    C = ((N - 1) / (2 W)) * sum_ij w_ij (x_i - x_j)^2 / sum_i (x_i - xbar)^2
    
    Non-negative, typically in [0, 2]: about 1 without autocorrelation,
    below 1 when clustered, above 1 when dispersed.

The two statistics have opposite orientation. Higher Moran's I means more
clustered, lower Geary's C means more clustered. Results must go through an
explicit transform (see spatialautocorr.analysis.enrichment) before being
ranked together.
"""
import logging
from collections import namedtuple

import numpy as np
from scipy import sparse

from spatialautocorr.errors import DegenerateInputError, InvalidInputError
from spatialautocorr.spatial.weights import SpatialWeights

logger = logging.getLogger('spatialautocorr.spatial.statistics')

def _as_weights(weights):
    if isinstance(weights, SpatialWeights):
        return weights
    return SpatialWeights.from_matrix(weights)

def _check_vector(x, weights):
    if sparse.issparse(x):
        x = x.toarray()
    x = np.asarray(x, dtype=np.float64).ravel()
    if x.shape[0] != weights.n:
        raise InvalidInputError(
            f"Expression vector has {x.shape[0]} values but the weight matrix has {weights.n} locations"
        )
    if not np.all(np.isfinite(x)):
        raise InvalidInputError("Expression vector contains non-finite values")
    return x

def _check_defined(x, weights):
    if np.ptp(x) == 0:
        raise DegenerateInputError("Expression is constant across all locations (zero variance)")
    if weights.total == 0:
        raise DegenerateInputError("Spatial weights sum to zero (no location has a neighbor)")

def morans_i(x, weights):
    """
    Compute Moran's I for one gene
    
    Parameters
    ----------
    x : array-like
        Expression values, one per location, aligned with the weights
    weights : SpatialWeights or array-like
        N x N spatial weight matrix
    
    Returns
    -------
    float
        Moran's I
    
    Raises
    ------
    InvalidInputError
        If the length of x does not match the weights or x is not finite
    DegenerateInputError
        If x is constant or the weights sum to zero
    """
    weights = _as_weights(weights)
    x = _check_vector(x, weights)
    _check_defined(x, weights)
    z = x - x.mean()
    numerator = z @ (weights.matrix @ z)
    denominator = z @ z
    return float((weights.n / weights.total) * (numerator / denominator))

def gearys_c(x, weights):
    """
    Compute Geary's C for one gene
    
    Parameters
    ----------
    x : array-like
        Expression values, one per location, aligned with the weights
    weights : SpatialWeights or array-like
        N x N spatial weight matrix
    
    Returns
    -------
    float
        Geary's C
    
    Raises
    ------
    InvalidInputError
        If the length of x does not match the weights or x is not finite
    DegenerateInputError
        If x is constant or the weights sum to zero
    """
    weights = _as_weights(weights)
    x = _check_vector(x, weights)
    _check_defined(x, weights)
    coo = weights.matrix.tocoo()
    numerator = np.sum(coo.data * (x[coo.row] - x[coo.col]) ** 2)
    z = x - x.mean()
    denominator = z @ z
    return float(((weights.n - 1) / (2 * weights.total)) * (numerator / denominator))

def _cross_products(Z, weights):
    # sum_ij w_ij z_i z_j for every row of Z
    return np.einsum('gi,gi->g', Z, np.asarray(weights.matrix @ Z.T).T)

def _moran_kernel(Z, weights, denominator):
    numerator = _cross_products(Z, weights)
    return (weights.n / weights.total) * numerator / denominator

def _geary_kernel(Z, weights, denominator):
    # sum_ij w_ij (z_i - z_j)^2 = sum_i (r_i + c_i) z_i^2 - 2 sum_ij w_ij z_i z_j
    degree = weights.row_sums + weights.col_sums
    numerator = (Z ** 2) @ degree - 2 * _cross_products(Z, weights)
    numerator = np.maximum(numerator, 0.0)
    return ((weights.n - 1) / (2 * weights.total)) * numerator / denominator


Statistic = namedtuple('Statistic', ['name', 'label', 'function', 'kernel', 'higher_is_clustered'])

STATISTICS = {
    'moran': Statistic('moran', "Moran's I", morans_i, _moran_kernel, True),
    'geary': Statistic('geary', "Geary's C", gearys_c, _geary_kernel, False),
}

def get_statistic(method):
    if method not in STATISTICS:
        raise InvalidInputError(f"Unsupported statistic: {method}. Options: {', '.join(STATISTICS)}")
    return STATISTICS[method]

def expected_value(method, n):
    """
    Expected value of a statistic under no spatial autocorrelation
    
    Parameters
    ----------
    method : str
        'moran' or 'geary'
    n : int
        Number of locations
    
    Returns
    -------
    float
        -1 / (n - 1) for Moran's I, 1 for Geary's C
    """
    get_statistic(method)
    if method == 'moran':
        return -1.0 / (n - 1)
    return 1.0

def degenerate_reasons(X, weights):
    """
    Find the genes for which the statistics are undefined
    
    Parameters
    ----------
    X : numpy.ndarray
        Expression matrix, genes x locations
    weights : SpatialWeights
    
    Returns
    -------
    list
        One entry per gene: None when the statistics are defined, otherwise
        the reason they are not
    """
    reasons = [None] * X.shape[0]
    finite = np.all(np.isfinite(X), axis=1)
    constant = np.zeros(X.shape[0], dtype=bool)
    constant[finite] = np.ptp(X[finite], axis=1) == 0
    for g in range(X.shape[0]):
        if not finite[g]:
            reasons[g] = str(InvalidInputError("Expression vector contains non-finite values"))
        elif constant[g]:
            reasons[g] = str(DegenerateInputError("Expression is constant across all locations (zero variance)"))
        elif weights.total == 0:
            reasons[g] = str(DegenerateInputError("Spatial weights sum to zero (no location has a neighbor)"))
    return reasons

def score_matrix(X, weights, methods=('moran', 'geary'), n_perms=0, seed=None):
    """
    Score every row of an expression matrix with one or more statistics
    
    Genes for which a statistic is undefined get NaN here; callers are
    expected to turn those into explicit markers using degenerate_reasons.
    
    Parameters
    ----------
    X : numpy.ndarray
        Expression matrix, genes x locations
    weights : SpatialWeights
        Spatial weights aligned with the columns of X
    methods : sequence of str, optional
        Statistics to compute
    n_perms : int, optional
        Number of location permutations for pseudo p-values. 0 disables them
    seed : int or numpy.random.Generator, optional
        Seed for the permutations
    
    Returns
    -------
    dict
        Maps each method to a dict with 'score' and, when n_perms > 0, 'pval'
    """
    weights = _as_weights(weights)
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2 or X.shape[1] != weights.n:
        raise InvalidInputError(
            f"Expression matrix of shape {X.shape} does not match {weights.n} locations"
        )
    reasons = degenerate_reasons(X, weights)
    valid = np.array([r is None for r in reasons], dtype=bool)
    
    results = {}
    for method in methods:
        get_statistic(method)
        results[method] = {'score': np.full(X.shape[0], np.nan)}
        if n_perms > 0:
            results[method]['pval'] = np.full(X.shape[0], np.nan)
    if not np.any(valid):
        return results
    
    Z = X[valid] - X[valid].mean(axis=1, keepdims=True)
    denominator = np.einsum('gi,gi->g', Z, Z)
    observed = {}
    for method in methods:
        kernel = STATISTICS[method].kernel
        observed[method] = kernel(Z, weights, denominator)
        results[method]['score'][valid] = observed[method]
    
    if n_perms > 0:
        counts = _permutation_counts(Z, weights, denominator, observed, n_perms, seed)
        for method in methods:
            results[method]['pval'][valid] = (counts[method] + 1) / (n_perms + 1)
    return results

def _permutation_counts(Z, weights, denominator, observed, n_perms, seed):
    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)
    counts = {method: np.zeros(Z.shape[0]) for method in observed}
    for _ in range(n_perms):
        perm = rng.permutation(weights.n)
        Zp = Z[:, perm]
        for method, obs in observed.items():
            stat = STATISTICS[method]
            permuted = stat.kernel(Zp, weights, denominator)
            # One-sided toward clustering
            if stat.higher_is_clustered:
                counts[method] += permuted >= obs
            else:
                counts[method] += permuted <= obs
    return counts
