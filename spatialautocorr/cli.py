import logging
from datetime import datetime
from pathlib import Path

import click

from spatialautocorr.analysis.enrichment import prepare_for_enrichment
from spatialautocorr.config import (
    get_parameter_defaults,
    read_config,
    update_config,
    validate_config,
    write_config,
)
from spatialautocorr.core.data_loader import load_data
from spatialautocorr.spatial.autocorr import calculate_spatial_autocorr
from spatialautocorr.spatial.weights import build_spatial_weights
from spatialautocorr.utils.io import load_results, save_results
from spatialautocorr.utils.logging import (
    LoggingContext,
    capture_warnings,
    log_execution_time,
    log_system_info,
    setup_logging,
)

def setup_output_dir(output_dir):
    """Create output directory structure"""
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    (output_path / "figures").mkdir(exist_ok=True)
    (output_path / "data").mkdir(exist_ok=True)
    
    return output_path

def run_pipeline(cfg, output_path):
    """
    Run weights construction, scoring, enrichment preparation and figures
    
    Parameters
    ----------
    cfg : dict
        Validated configuration
    output_path : Path
        Output directory created by setup_output_dir
    
    Returns
    -------
    dict
        Maps method to AutocorrelationResult
    """
    logger = logging.getLogger('spatialautocorr')
    data_cfg = cfg['data']
    
    logger.info("Loading data...")
    expression, locations = load_data(
        data_cfg['expression_path'],
        locations_path=data_cfg.get('locations_path') or None,
        format=data_cfg.get('format', 'csv'),
        layer=data_cfg.get('layer'),
        coord_columns=tuple(data_cfg.get('coord_columns', ('array_row', 'array_col'))),
        filter_genes=data_cfg.get('filter_genes', True),
    )
    
    logger.info("Building spatial weights...")
    weights = build_spatial_weights(locations, **cfg['weights'])
    
    logger.info("Calculating spatial autocorrelation...")
    stats_cfg = cfg['statistics']
    # Scoring records (undefined genes, permutations) also go to data/scoring.log
    scoring_handler = logging.FileHandler(output_path / "data" / "scoring.log")
    scoring_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    with LoggingContext('spatialautocorr.spatial', handler=scoring_handler):
        results = calculate_spatial_autocorr(
            expression, weights,
            methods=tuple(stats_cfg.get('methods', ('moran', 'geary'))),
            n_perms=stats_cfg.get('n_perms', 0),
            seed=stats_cfg.get('seed', 0),
            n_jobs=stats_cfg.get('n_jobs', 1),
            backend=stats_cfg.get('backend', 'threads'),
            chunk_size=stats_cfg.get('chunk_size', 500),
            show_progress=True,
        )
    
    enrichment = None
    if cfg.get('output', {}).get('save_enrichment', True):
        enrichment_cfg = cfg.get('enrichment', {})
        logger.info("Preparing enrichment inputs...")
        enrichment = {
            method: prepare_for_enrichment(result, **enrichment_cfg)
            for method, result in results.items()
        }
    
    logger.info("Saving analysis results...")
    save_results(results, output_path / "data",
                 save_formats=cfg.get('output', {}).get('save_formats', ['csv']),
                 enrichment=enrichment, weights=weights)
    
    vis_cfg = cfg.get('visualization', {})
    if vis_cfg.get('create_figures', True):
        from spatialautocorr.visualization.static import generate_static_figures
        
        logger.info("Generating figures...")
        generate_static_figures(results, output_path / "figures",
                                expression=expression, locations=locations,
                                n_top_genes=vis_cfg.get('n_top_genes', 20),
                                figsize=vis_cfg.get('figsize', [10, 8]),
                                dpi=vis_cfg.get('dpi', 300))
    return results

@click.group()
def cli():
    """spatialautocorr: per-gene spatial autocorrelation for spatial transcriptomics"""
    pass

@cli.command()
@click.argument('output_path', type=click.Path())
def init_config(output_path):
    """Initialize a default configuration file"""
    config_path = Path(output_path)
    if config_path.exists() and not click.confirm(f"The file {output_path} already exists. Overwrite?"):
        click.echo("Aborted.")
        return
    
    write_config(get_parameter_defaults(), config_path)
    click.echo(f"Default configuration created at {output_path}")

@cli.command()
@click.argument('expression_path', type=click.Path(exists=True))
@click.argument('locations_path', type=click.Path(exists=True), required=False)
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file')
@click.option('--output-dir', '-o', type=click.Path(), default='./spatialautocorr_results', help='Output directory')
@click.option('--format', 'data_format', type=click.Choice(['csv', 'anndata']), default=None,
              help='Input format (overrides the configuration)')
@click.option('--weights', 'weights_method', type=click.Choice(['adjacency', 'knn', 'inverse_distance']),
              default=None, help='Weighting policy (overrides the configuration)')
@click.option('--n-perms', type=int, default=None, help='Number of permutations for p-values')
@click.option('--n-jobs', type=int, default=None, help='Number of parallel jobs')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), default='INFO',
              help='Logging level')
def run(expression_path, locations_path, config, output_dir, data_format, weights_method,
        n_perms, n_jobs, log_level):
    """Score every gene of EXPRESSION_PATH using the locations in LOCATIONS_PATH"""
    output_path = setup_output_dir(output_dir)
    log_file = output_path / f"spatialautocorr_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    setup_logging(log_level, log_file)
    logger = logging.getLogger('spatialautocorr')
    log_end = log_execution_time(logger)
    capture_warnings(logger)
    log_system_info(logger)
    
    cfg = get_parameter_defaults()
    if config:
        cfg = update_config(cfg, read_config(config))
        logger.info(f"Using configuration from {config}")
    else:
        logger.info("Using default configuration")
    
    overrides = {'data': {'expression_path': expression_path}}
    if locations_path:
        overrides['data']['locations_path'] = locations_path
    if data_format:
        overrides['data']['format'] = data_format
    if weights_method:
        overrides['weights'] = {'method': weights_method}
    statistics = {}
    if n_perms is not None:
        statistics['n_perms'] = n_perms
    if n_jobs is not None:
        statistics['n_jobs'] = n_jobs
    if statistics:
        overrides['statistics'] = statistics
    cfg = update_config(cfg, overrides)
    try:
        validate_config(cfg)
    except ValueError as e:
        raise click.UsageError(str(e))
    write_config(cfg, output_path / "config_used.yaml")
    
    try:
        results = run_pipeline(cfg, output_path)
    except Exception as e:
        logger.error(f"Analysis failed: {str(e)}", exc_info=True)
        click.echo(f"Analysis failed: {str(e)}")
        raise
    
    log_end("Analysis completed")
    for result in results.values():
        click.echo(f"{result.label}: {len(result) - len(result.undefined_genes)} genes scored, "
                   f"{len(result.undefined_genes)} undefined")
    click.echo(f"Results saved to {output_dir}")

@cli.command()
@click.argument('results_dir', type=click.Path(exists=True))
@click.option('--output-dir', '-o', type=click.Path(), default=None,
              help='Directory for figures (defaults to RESULTS_DIR/../figures)')
@click.option('--n-top-genes', type=int, default=20, help='Number of genes in ranking plots')
@click.option('--dpi', type=int, default=300, help='DPI for saved figures')
def visualize(results_dir, output_dir, n_top_genes, dpi):
    """Generate figures from saved result tables"""
    from spatialautocorr.visualization.static import generate_static_figures
    
    results = load_results(results_dir)
    if output_dir is None:
        output_dir = Path(results_dir).parent / "figures"
    paths = generate_static_figures(results, output_dir, n_top_genes=n_top_genes, dpi=dpi)
    
    click.echo(f"Visualization completed. {len(paths)} figures saved to {output_dir}")

def main():
    cli()


if __name__ == "__main__":
    main()
