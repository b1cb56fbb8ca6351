"""
Preparation of autocorrelation scores for external enrichment tools.

Enrichment procedures expect a single-column numeric matrix indexed by gene.
Moran's I and Geary's C cannot be handed over as they are: higher Moran's I
means more clustered, while lower Geary's C means more clustered, and the two
live on different ranges. SPARK-style tools report p-values where lower means
more significant. Every conversion here is explicit:

- 'rank': percentile rank of spatial clustering, in (0, 1]
- 'sign': Moran's I unchanged, Geary's C negated
- 'none': raw values, orientation left to the caller

With orientation='lower_is_significant' (only for 'rank'), the most clustered
gene gets the smallest value, matching p-value-like inputs.
"""
import logging

import pandas as pd

from spatialautocorr.errors import InvalidInputError

logger = logging.getLogger('spatialautocorr.analysis.enrichment')

ENRICHMENT_TRANSFORMS = ('rank', 'sign', 'none')
ORIENTATIONS = ('higher_is_clustered', 'lower_is_significant')

def _clustering_score(result):
    scores = result.defined()
    if result.undefined_genes:
        logger.warning(f"Excluding {len(result.undefined_genes)} genes with undefined {result.label} "
                       f"from enrichment input: {', '.join(map(str, result.undefined_genes[:10]))}")
    return scores if result.higher_is_clustered else -scores

def prepare_for_enrichment(result, transform='rank', orientation='higher_is_clustered', column=None):
    """
    Convert an autocorrelation result into an enrichment input matrix
    
    Parameters
    ----------
    result : AutocorrelationResult
        Moran's I or Geary's C result
    transform : str, optional
        Options: 'rank', 'sign', 'none'
    orientation : str, optional
        'higher_is_clustered' or 'lower_is_significant'
    column : str, optional
        Name of the output column. Defaults to '<method>_<transform>'
    
    Returns
    -------
    pandas.DataFrame
        Single numeric column indexed by gene, undefined genes excluded
    """
    if transform not in ENRICHMENT_TRANSFORMS:
        raise InvalidInputError(f"Unsupported enrichment transform: {transform}. "
                                f"Options: {', '.join(ENRICHMENT_TRANSFORMS)}")
    if orientation not in ORIENTATIONS:
        raise InvalidInputError(f"Unsupported orientation: {orientation}. Options: {', '.join(ORIENTATIONS)}")
    if orientation == 'lower_is_significant' and transform != 'rank':
        raise InvalidInputError("orientation='lower_is_significant' requires transform='rank'")
    if column is None:
        column = f"{result.method}_{transform}"
    
    if transform == 'none':
        values = result.defined()
        if result.undefined_genes:
            logger.warning(f"Excluding {len(result.undefined_genes)} genes with undefined {result.label}")
        logger.info(f"Passing raw {result.label} values; higher is "
                    f"{'more' if result.higher_is_clustered else 'less'} clustered")
    elif transform == 'sign':
        values = _clustering_score(result)
    else:
        clustered = _clustering_score(result)
        if orientation == 'lower_is_significant':
            values = (-clustered).rank(pct=True, method='average')
        else:
            values = clustered.rank(pct=True, method='average')
    
    values.index.name = 'gene'
    return values.astype(float).to_frame(name=column)

def combine_for_enrichment(results, transform='rank', orientation='higher_is_clustered'):
    """
    Put several results on a common footing, one column per statistic
    
    Parameters
    ----------
    results : dict
        Maps method to AutocorrelationResult
    transform : str, optional
        'rank' or 'sign'; raw values cannot be combined
    orientation : str, optional
        'higher_is_clustered' or 'lower_is_significant'
    
    Returns
    -------
    pandas.DataFrame
        Genes x statistics, only genes defined for every statistic
    """
    if transform == 'none':
        raise InvalidInputError("Raw Moran's I and Geary's C values cannot be combined; use 'rank' or 'sign'")
    frames = [prepare_for_enrichment(result, transform=transform, orientation=orientation)
              for result in results.values()]
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, axis=1, join='inner')

def top_clustered_genes(result, n_genes=100):
    """
    Genes with the strongest spatial clustering
    
    Parameters
    ----------
    result : AutocorrelationResult
    n_genes : int, optional
        Number of genes to return
    
    Returns
    -------
    list
        Gene identifiers, most clustered first
    """
    scores = result.defined()
    ordered = scores.sort_values(ascending=not result.higher_is_clustered)
    return ordered.index[:n_genes].tolist()
