"""
Basic Spatial Autocorrelation Workflow

This is a standard basic workflow for scoring every gene of a spatial
transcriptomics dataset with Moran's I and Geary's C using the
spatialautocorr package.
"""

import scanpy as sc
import squidpy as sq
from pathlib import Path

from spatialautocorr.utils.logging import setup_logging
from spatialautocorr.spatial.weights import weights_from_anndata
from spatialautocorr.spatial.autocorr import calculate_spatial_stats
from spatialautocorr.analysis.enrichment import combine_for_enrichment, prepare_for_enrichment
from spatialautocorr.visualization.static import generate_static_figures
from spatialautocorr.utils.io import save_results

def main():
    # Set up logging
    logger = setup_logging(level="INFO", log_file="spatialautocorr_basic_workflow.log")
    logger.info("Starting basic spatial autocorrelation workflow")
    
    # Create output directories
    output_dir = Path("spatialautocorr_output")
    output_dir.mkdir(exist_ok=True)
    
    figures_dir = output_dir / "figures"
    figures_dir.mkdir(exist_ok=True)
    
    data_dir = output_dir / "data"
    data_dir.mkdir(exist_ok=True)
    
    # Step 1: Load data
    logger.info("Step 1: Loading data")
    adata = sq.datasets.visium("V1_Human_Lymph_Node")
    adata.var_names_make_unique()
    logger.info(f"Loaded dataset with {adata.n_obs} spots and {adata.n_vars} genes")
    
    # Step 2: Variance stabilization
    logger.info("Step 2: Normalization")
    sc.pp.filter_genes(adata, min_cells=10)
    adata.layers["counts"] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    sc.pp.highly_variable_genes(adata, n_top_genes=2000, flavor="seurat")
    genes = adata.var_names[adata.var["highly_variable"]].tolist()
    
    # Step 3: Spatial weights from the array grid
    logger.info("Step 3: Building spatial weights")
    weights = weights_from_anndata(
        adata,
        method="adjacency",
        grid="hex",
        radius=2.0,
    )
    logger.info(f"Spatial weights: {weights.summary()}")
    
    # Step 4: Moran's I and Geary's C for every gene
    logger.info("Step 4: Spatial autocorrelation")
    results = calculate_spatial_stats(
        adata,
        weights=weights,
        methods=("moran", "geary"),
        genes=genes,
        n_perms=100,
        n_jobs=4,
    )
    
    # Step 5: Enrichment inputs
    logger.info("Step 5: Preparing enrichment inputs")
    enrichment = {
        method: prepare_for_enrichment(result, transform="rank")
        for method, result in results.items()
    }
    combined = combine_for_enrichment(results)
    combined.to_csv(data_dir / "combined_enrichment_input.csv")
    
    # Step 6: Visualization
    logger.info("Step 6: Visualization")
    generate_static_figures(
        results,
        output_dir=figures_dir,
        figsize=(10, 8),
        dpi=300
    )
    
    # Step 7: Save results
    logger.info("Step 7: Saving results")
    save_results(
        results,
        output_dir=data_dir,
        save_formats=["csv", "json"],
        enrichment=enrichment,
        weights=weights
    )
    
    logger.info(f"Analysis completed successfully. Results saved to {output_dir}")

if __name__ == "__main__":
    main()
