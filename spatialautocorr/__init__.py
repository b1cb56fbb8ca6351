from spatialautocorr.errors import DegenerateInputError, InvalidInputError, SpatialAutocorrError
from spatialautocorr.spatial.weights import SpatialWeights, build_spatial_weights, weights_from_anndata
from spatialautocorr.spatial.statistics import gearys_c, morans_i
from spatialautocorr.spatial.autocorr import (
    AutocorrelationResult,
    Undefined,
    calculate_spatial_autocorr,
    calculate_spatial_stats,
)
from spatialautocorr.analysis.enrichment import prepare_for_enrichment

__version__ = '0.1.0'
