import logging
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from spatialautocorr.analysis.enrichment import top_clustered_genes

logger = logging.getLogger('spatialautocorr.visualization.static')

def _significance_stars(pval):
    if pval < 0.001:
        return '***'
    if pval < 0.01:
        return '**'
    if pval < 0.05:
        return '*'
    return ''

def _save_figure(fig, output_dir, name, dpi):
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    fig_path = output_dir / name
    fig.savefig(fig_path, dpi=dpi, bbox_inches='tight')
    logger.info(f"Saved figure to {fig_path}")
    return fig_path

def plot_autocorrelation_ranking(result, n_top_genes=20, include_pvalues=True,
                                 output_dir=None, figsize=(10, 8), dpi=300):
    """
    Bar chart of the most spatially clustered genes for one statistic
    
    Parameters
    ----------
    result : AutocorrelationResult
        Moran's I or Geary's C result
    n_top_genes : int, optional
        Number of genes to show
    include_pvalues : bool, optional
        Whether to mark significant genes when permutation p-values exist
    output_dir : str or Path, optional
        Directory to save figure
    figsize : tuple, optional
        Figure size
    dpi : int, optional
        DPI for saved figure
    
    Returns
    -------
    plt.Figure
        Matplotlib figure
    """
    plt.ioff()
    
    logger.info(f"Plotting {result.label} ranking")
    genes = top_clustered_genes(result, n_genes=n_top_genes)
    if not genes:
        logger.error(f"No defined {result.label} values to plot")
        raise ValueError(f"No defined {result.label} values to plot")
    scores = result.defined().loc[genes]
    
    fig, ax = plt.subplots(figsize=figsize)
    ax.barh(y=[str(gene) for gene in scores.index[::-1]], width=scores.values[::-1], color='skyblue')
    ax.axvline(result.expected, color='grey', linestyle='--', linewidth=1,
               label=f'Expected ({result.expected:.3g})')
    
    pvals = result.pvalues()
    if include_pvalues and not pvals.empty:
        for i, gene in enumerate(scores.index[::-1]):
            stars = _significance_stars(pvals.get(gene, 1.0))
            if stars:
                ax.text(scores[gene], i, f' {stars}', va='center', fontsize=10)
        ax.text(0.95, 0.05, '* p < 0.05\n** p < 0.01\n*** p < 0.001',
                transform=ax.transAxes, horizontalalignment='right',
                verticalalignment='bottom', fontsize=9,
                bbox=dict(facecolor='white', alpha=0.8))
    
    direction = 'higher' if result.higher_is_clustered else 'lower'
    ax.set_xlabel(f"{result.label} ({direction} = more clustered)")
    ax.set_ylabel("Gene")
    ax.set_title(f"Spatial Autocorrelation ({result.label})")
    ax.legend(loc='upper right')
    plt.tight_layout()
    
    if output_dir is not None:
        _save_figure(fig, output_dir, f"{result.method}_ranking.png", dpi)
    plt.close(fig)
    
    return fig

def plot_moran_vs_geary(results, output_dir=None, figsize=(8, 8), dpi=300, annotate=5):
    """
    Scatter plot of Moran's I against Geary's C
    
    The two statistics run in opposite directions, so clustered genes sit
    in the lower right corner.
    
    Parameters
    ----------
    results : dict
        Must contain 'moran' and 'geary' AutocorrelationResult entries
    output_dir : str or Path, optional
        Directory to save figure
    figsize : tuple, optional
        Figure size
    dpi : int, optional
        DPI for saved figure
    annotate : int, optional
        Number of top Moran's I genes to label
    
    Returns
    -------
    plt.Figure
        Matplotlib figure
    """
    plt.ioff()
    
    if 'moran' not in results or 'geary' not in results:
        logger.error("Both Moran's I and Geary's C results are required")
        raise ValueError("Both Moran's I and Geary's C results are required")
    df = pd.concat([results['moran'].defined(), results['geary'].defined()], axis=1, join='inner')
    if df.empty:
        logger.error("No genes with both statistics defined")
        raise ValueError("No genes with both statistics defined")
    
    fig, ax = plt.subplots(figsize=figsize)
    sns.scatterplot(data=df, x='moran', y='geary', ax=ax, s=20, alpha=0.7, edgecolor=None)
    ax.axvline(results['moran'].expected, color='grey', linestyle='--', linewidth=1)
    ax.axhline(results['geary'].expected, color='grey', linestyle='--', linewidth=1)
    for gene in df.sort_values('moran', ascending=False).index[:annotate]:
        ax.annotate(str(gene), (df.loc[gene, 'moran'], df.loc[gene, 'geary']),
                    fontsize=8, xytext=(3, 3), textcoords='offset points')
    ax.set_xlabel("Moran's I")
    ax.set_ylabel("Geary's C")
    ax.set_title("Moran's I vs Geary's C")
    plt.tight_layout()
    
    if output_dir is not None:
        _save_figure(fig, output_dir, "moran_vs_geary.png", dpi)
    plt.close(fig)
    
    return fig

def plot_spatial_expression(expression, locations, genes, output_dir=None,
                            figsize=(10, 8), dpi=300, cmap='viridis'):
    """
    Plot gene expression on the array grid
    
    Parameters
    ----------
    expression : pandas.DataFrame
        Genes x locations
    locations : pandas.DataFrame
        Array row/column coordinates indexed like the expression columns
    genes : list
        Genes to plot
    output_dir : str or Path, optional
        Directory to save figure
    figsize : tuple, optional
        Figure size
    dpi : int, optional
        DPI for saved figure
    cmap : str, optional
        Colormap
    
    Returns
    -------
    plt.Figure
        Matplotlib figure
    """
    plt.ioff()
    
    genes = [gene for gene in genes if gene in expression.index]
    if not genes:
        logger.error("No valid genes to plot")
        raise ValueError("No valid genes to plot")
    coords = locations.loc[expression.columns].to_numpy()
    
    n_cols = min(2, len(genes))
    n_rows = (len(genes) + n_cols - 1) // n_cols
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(figsize[0] * n_cols / 2, figsize[1] * n_rows / 2),
                             squeeze=False)
    for ax, gene in zip(axes.flat, genes):
        # Array rows grow downwards, like the tissue image
        scatter = ax.scatter(coords[:, 1], coords[:, 0], c=expression.loc[gene].to_numpy(),
                             cmap=cmap, s=12)
        ax.invert_yaxis()
        ax.set_aspect('equal')
        ax.set_title(str(gene))
        ax.set_xticks([])
        ax.set_yticks([])
        fig.colorbar(scatter, ax=ax, shrink=0.7)
    for ax in list(axes.flat)[len(genes):]:
        ax.axis('off')
    plt.tight_layout()
    
    if output_dir is not None:
        _save_figure(fig, output_dir, "spatial_expression.png", dpi)
    plt.close(fig)
    
    return fig

def generate_static_figures(results, output_dir, expression=None, locations=None,
                            n_top_genes=20, figsize=(10, 8), dpi=300):
    """
    Generate all figures for a set of autocorrelation results
    
    Parameters
    ----------
    results : dict
        Maps method to AutocorrelationResult
    output_dir : str or Path
        Directory to save figures
    expression : pandas.DataFrame, optional
        Genes x locations, for spatial expression maps
    locations : pandas.DataFrame, optional
        Location table, for spatial expression maps
    n_top_genes : int, optional
        Number of genes in ranking plots
    figsize : tuple, optional
        Figure size
    dpi : int, optional
        DPI for saved figures
    
    Returns
    -------
    dict
        Dictionary with paths to generated figures
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Saving figures to absolute path: {output_dir.absolute()}")
    figsize = tuple(figsize)
    figure_paths = {}
    
    for method, result in results.items():
        if result.defined().empty:
            logger.warning(f"Skipping {result.label} ranking: no defined values")
            continue
        plot_autocorrelation_ranking(result, n_top_genes=n_top_genes, output_dir=output_dir,
                                     figsize=figsize, dpi=dpi)
        figure_paths[f'{method}_ranking'] = output_dir / f"{method}_ranking.png"
    
    if 'moran' in results and 'geary' in results:
        try:
            plot_moran_vs_geary(results, output_dir=output_dir, dpi=dpi)
            figure_paths['moran_vs_geary'] = output_dir / "moran_vs_geary.png"
        except ValueError as e:
            logger.warning(f"Skipping Moran's I vs Geary's C plot: {str(e)}")
    
    if expression is not None and locations is not None:
        first = next(iter(results.values()))
        genes = top_clustered_genes(first, n_genes=4)
        if genes:
            plot_spatial_expression(expression, locations, genes, output_dir=output_dir,
                                    figsize=figsize, dpi=dpi)
            figure_paths['spatial_expression'] = output_dir / "spatial_expression.png"
    
    logger.info(f"Generated {len(figure_paths)} figures")
    return figure_paths
