import logging
from collections.abc import Mapping

import numpy as np
import pandas as pd
from scipy import sparse

from spatialautocorr.errors import DegenerateInputError, InvalidInputError
from spatialautocorr.spatial.statistics import (
    expected_value,
    get_statistic,
    degenerate_reasons,
    score_matrix,
)
from spatialautocorr.spatial.weights import SpatialWeights, weights_from_anndata
from spatialautocorr.utils.parallel import parallelize, spawn_seeds, split_chunks

logger = logging.getLogger('spatialautocorr.spatial.autocorr')

class Undefined:
    """
    Marker for a gene whose statistic could not be computed
    
    Attributes
    ----------
    gene : str
        Gene identifier
    reason : str
        Message of the error that made the statistic undefined
    """
    
    __slots__ = ('gene', 'reason')
    
    def __init__(self, gene, reason):
        self.gene = gene
        self.reason = reason
    
    def __eq__(self, other):
        return isinstance(other, Undefined) and (self.gene, self.reason) == (other.gene, other.reason)
    
    def __hash__(self):
        return hash((self.gene, self.reason))
    
    def __repr__(self):
        return f"Undefined(gene={self.gene!r}, reason={self.reason!r})"

class AutocorrelationResult(Mapping):
    """
    Per-gene values of one spatial autocorrelation statistic
    
    Maps gene identifiers to a float, or to an Undefined marker when the
    statistic could not be computed for that gene. Moran's I and Geary's C
    have opposite orientation (see `higher_is_clustered`); do not rank them
    together without spatialautocorr.analysis.enrichment.prepare_for_enrichment.
    
    Parameters
    ----------
    method : str
        'moran' or 'geary'
    values : dict
        Gene -> float or Undefined
    n_locations : int
        Number of locations the statistic was computed over
    pvals : dict, optional
        Gene -> permutation p-value for defined genes
    n_perms : int, optional
        Number of permutations behind the p-values
    """
    
    def __init__(self, method, values, n_locations, pvals=None, n_perms=0):
        statistic = get_statistic(method)
        self.method = method
        self.label = statistic.label
        self.higher_is_clustered = statistic.higher_is_clustered
        self.n_locations = n_locations
        self.expected = expected_value(method, n_locations)
        self.n_perms = n_perms
        self._values = dict(values)
        self._pvals = dict(pvals) if pvals else {}
    
    def __getitem__(self, gene):
        return self._values[gene]
    
    def __iter__(self):
        return iter(self._values)
    
    def __len__(self):
        return len(self._values)
    
    @property
    def undefined_genes(self):
        return [gene for gene, value in self._values.items() if isinstance(value, Undefined)]
    
    def defined(self):
        """
        Scores of the genes for which the statistic is defined
        
        Returns
        -------
        pandas.Series
            Float scores indexed by gene, named after the method
        """
        scores = {gene: value for gene, value in self._values.items() if not isinstance(value, Undefined)}
        return pd.Series(scores, name=self.method, dtype=float)
    
    def pvalues(self):
        return pd.Series(self._pvals, name='pval', dtype=float)
    
    def to_frame(self):
        """
        Result table with one row per gene, undefined genes included
        
        Returns
        -------
        pandas.DataFrame
            Columns: the method name (nullable Float64, <NA> when undefined),
            'defined', 'reason' and, with permutations, 'pval' and 'pval_adj'
        """
        genes = list(self._values)
        scores = pd.array(
            [pd.NA if isinstance(v, Undefined) else v for v in self._values.values()],
            dtype='Float64',
        )
        df = pd.DataFrame(index=pd.Index(genes, name='gene'))
        df[self.method] = scores
        df['defined'] = [not isinstance(v, Undefined) for v in self._values.values()]
        df['reason'] = [v.reason if isinstance(v, Undefined) else '' for v in self._values.values()]
        if self._pvals:
            pvals = pd.Series(self._pvals, dtype=float).reindex(genes)
            df['pval'] = pd.array(pvals.to_numpy(), dtype='Float64')
            df['pval_adj'] = pd.array(_adjust_pvalues(pvals).to_numpy(), dtype='Float64')
        return df
    
    @classmethod
    def from_frame(cls, df, method, n_locations, n_perms=0):
        """Rebuild a result from a table written by to_frame"""
        values = {}
        for gene, row in df.iterrows():
            if bool(row['defined']):
                values[gene] = float(row[method])
            else:
                values[gene] = Undefined(gene, row['reason'])
        pvals = None
        if 'pval' in df:
            pvals = {gene: float(p) for gene, p in df['pval'].items() if pd.notna(p)}
        return cls(method, values, n_locations, pvals=pvals, n_perms=n_perms)
    
    def __repr__(self):
        return (f"AutocorrelationResult(method={self.method!r}, n_genes={len(self)}, "
                f"n_undefined={len(self.undefined_genes)})")

def _adjust_pvalues(pvals):
    from statsmodels.stats.multitest import multipletests
    
    adjusted = pd.Series(np.nan, index=pvals.index)
    mask = pvals.notna()
    if mask.any():
        adjusted[mask] = multipletests(pvals[mask].to_numpy(), method='fdr_bh')[1]
    return adjusted

def _expression_from_anndata(adata, layer=None, genes=None):
    if layer is not None:
        if layer not in adata.layers:
            logger.error(f"Layer {layer} not found in adata.layers")
            raise InvalidInputError(f"Layer {layer} not found in adata.layers")
        X = adata.layers[layer]
    else:
        X = adata.X
    if genes is not None:
        missing = [gene for gene in genes if gene not in adata.var_names]
        if missing:
            logger.warning(f"{len(missing)} genes not found in the data: {', '.join(missing[:10])}")
        idx = [adata.var_names.get_loc(gene) for gene in genes if gene in adata.var_names]
        X = X[:, idx]
        var_names = adata.var_names[idx]
    else:
        var_names = adata.var_names
    X = X.toarray() if sparse.issparse(X) else np.asarray(X)
    return pd.DataFrame(X.T, index=var_names, columns=adata.obs_names)

def _align_expression(expression, weights):
    if not expression.index.is_unique:
        dup = expression.index[expression.index.duplicated()].unique().tolist()
        logger.error(f"Gene identifiers are not unique: {dup[:10]}")
        raise InvalidInputError(f"Gene identifiers are not unique: {', '.join(map(str, dup[:10]))}")
    if expression.shape[1] != weights.n:
        logger.error(f"Expression has {expression.shape[1]} locations, weights have {weights.n}")
        raise InvalidInputError(
            f"Expression matrix has {expression.shape[1]} locations but the weight matrix has {weights.n}"
        )
    if isinstance(weights.index, pd.RangeIndex) or expression.columns.equals(weights.index):
        return expression
    missing = weights.index.difference(expression.columns)
    if len(missing) > 0:
        logger.error(f"{len(missing)} locations of the weight matrix are missing from the expression matrix")
        raise InvalidInputError(
            f"{len(missing)} locations of the weight matrix are missing from the expression matrix "
            f"(e.g. {missing[0]})"
        )
    logger.info("Reordering expression columns to match the weight matrix")
    return expression.loc[:, weights.index]

def _score_chunk(task, weights, methods, n_perms):
    X, seed = task
    scores = score_matrix(X, weights, methods=methods, n_perms=n_perms, seed=np.random.default_rng(seed))
    return scores, degenerate_reasons(X, weights)

def _score_per_gene(expression, weights, methods):
    values = {method: {} for method in methods}
    for gene, row in expression.iterrows():
        for method in methods:
            function = get_statistic(method).function
            try:
                values[method][gene] = function(row.to_numpy(), weights)
            except (DegenerateInputError, InvalidInputError) as e:
                logger.debug(f"{get_statistic(method).label} undefined for gene {gene}: {str(e)}")
                values[method][gene] = Undefined(gene, str(e))
    return values, {method: {} for method in methods}

def _score_vectorized(expression, weights, methods, n_perms, seed, n_jobs, backend, chunk_size, show_progress):
    X = expression.to_numpy(dtype=np.float64)
    genes = expression.index.tolist()
    chunks = split_chunks(len(genes), chunk_size)
    seeds = spawn_seeds(seed, len(chunks))
    tasks = [(X[chunk], s) for chunk, s in zip(chunks, seeds)]
    outputs = parallelize(_score_chunk, tasks, n_jobs=n_jobs, backend=backend,
                          show_progress=show_progress, desc="Scoring genes",
                          weights=weights, methods=methods, n_perms=n_perms)
    
    values = {method: {} for method in methods}
    pvals = {method: {} for method in methods}
    for chunk, (scores, reasons) in zip(chunks, outputs):
        for offset, gene in enumerate(genes[chunk]):
            reason = reasons[offset]
            for method in methods:
                if reason is not None:
                    values[method][gene] = Undefined(gene, reason)
                    continue
                values[method][gene] = float(scores[method]['score'][offset])
                if n_perms > 0:
                    pvals[method][gene] = float(scores[method]['pval'][offset])
    return values, pvals

def calculate_spatial_autocorr(expression, weights, methods=('moran', 'geary'), n_perms=0,
                               seed=0, n_jobs=1, backend='threads', chunk_size=500,
                               vectorized=True, show_progress=False, layer=None, genes=None):
    """
    Compute Moran's I and/or Geary's C for every gene
    
    The weight matrix is built once by the caller and reused for all genes.
    Genes for which a statistic is undefined (constant expression, zero total
    weight) do not abort the batch: they are kept in the result as
    Undefined markers.
    
    Parameters
    ----------
    expression : pandas.DataFrame or AnnData
        Genes x locations DataFrame with unique gene identifiers as index, or
        an AnnData object with locations as observations
    weights : SpatialWeights or array-like
        Spatial weights aligned with the locations
    methods : sequence of str, optional
        Statistics to compute. Options: 'moran', 'geary'
    n_perms : int, optional
        Number of location permutations for pseudo p-values. 0 disables them
    seed : int, optional
        Seed for the permutations
    n_jobs : int, optional
        Number of parallel jobs over chunks of genes. -1 uses all cores
    backend : str, optional
        Options: 'serial', 'threads', 'processes'
    chunk_size : int, optional
        Number of genes scored together with matrix operations
    vectorized : bool, optional
        If False, score genes one at a time with morans_i/gearys_c
    show_progress : bool, optional
        Whether to show a progress bar
    layer : str, optional
        Layer to use for AnnData input
    genes : list, optional
        Subset of genes to score for AnnData input
    
    Returns
    -------
    dict
        Maps each method to an AutocorrelationResult
    
    Raises
    ------
    InvalidInputError
        If the expression matrix does not match the weights or gene
        identifiers are not unique
    """
    if isinstance(methods, str):
        methods = (methods,)
    methods = tuple(methods)
    if not methods:
        raise InvalidInputError("At least one statistic must be requested")
    for method in methods:
        get_statistic(method)
    if not isinstance(weights, SpatialWeights):
        weights = SpatialWeights.from_matrix(weights)
    
    if isinstance(expression, pd.DataFrame):
        if genes is not None:
            expression = expression.loc[[gene for gene in genes if gene in expression.index]]
    else:
        expression = _expression_from_anndata(expression, layer=layer, genes=genes)
    expression = _align_expression(expression, weights)
    
    labels = ', '.join(get_statistic(method).label for method in methods)
    logger.info(f"Calculating {labels} for {expression.shape[0]} genes over {weights.n} locations")
    if weights.total == 0:
        logger.warning("Spatial weights sum to zero: all statistics are undefined")
    
    if vectorized:
        values, pvals = _score_vectorized(expression, weights, methods, n_perms, seed,
                                          n_jobs, backend, chunk_size, show_progress)
    else:
        if n_perms > 0:
            logger.warning("Permutation p-values are only computed when vectorized=True")
            n_perms = 0
        values, pvals = _score_per_gene(expression, weights, methods)
    
    results = {}
    for method in methods:
        result = AutocorrelationResult(method, values[method], weights.n,
                                       pvals=pvals[method], n_perms=n_perms)
        n_undefined = len(result.undefined_genes)
        if n_undefined:
            logger.warning(f"{result.label} undefined for {n_undefined} genes: "
                           f"{', '.join(map(str, result.undefined_genes[:10]))}")
        logger.info(f"{result.label} calculated for {len(result) - n_undefined} genes")
        results[method] = result
    return results

def calculate_spatial_stats(adata, weights=None, methods=('moran', 'geary'), layer=None,
                            genes=None, key_added='spatial_autocorr', weights_kwargs=None, **kwargs):
    """
    Calculate spatial autocorrelation for the genes of an AnnData object
    
    Parameters
    ----------
    adata : AnnData
        AnnData object with locations as observations
    weights : SpatialWeights, optional
        Prebuilt weights. If None, they are built from the array coordinates
        in adata.obs with weights_kwargs
    methods : sequence of str, optional
        Statistics to compute
    layer : str, optional
        Layer to use for gene expression
    genes : list, optional
        Genes to score. If None, all genes are scored
    key_added : str, optional
        Key in adata.uns for the result table
    weights_kwargs : dict, optional
        Arguments for weights_from_anndata
    **kwargs
        Additional arguments for calculate_spatial_autocorr
    
    Returns
    -------
    dict
        Maps each method to an AutocorrelationResult
    """
    if not adata.var_names.is_unique:
        logger.error("Variable names are not unique. Run adata.var_names_make_unique() first.")
        raise InvalidInputError("Variable names are not unique")
    if weights is None:
        weights = weights_from_anndata(adata, **(weights_kwargs or {}))
    results = calculate_spatial_autocorr(adata, weights, methods=methods, layer=layer,
                                         genes=genes, **kwargs)
    
    columns = {'moran': 'moranI', 'geary': 'gearyC'}
    tables = []
    for method, result in results.items():
        table = result.to_frame()
        table = table.rename(columns={
            method: columns[method],
            'defined': f'{method}_defined',
            'reason': f'{method}_reason',
            'pval': f'{method}_pval',
            'pval_adj': f'{method}_pval_adj',
        })
        tables.append(table)
        scores = pd.Series(table[columns[method]].to_numpy(dtype=float, na_value=np.nan), index=table.index)
        adata.var[columns[method]] = scores.reindex(adata.var_names)
    adata.uns[key_added] = pd.concat(tables, axis=1)
    return results
