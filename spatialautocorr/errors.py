class SpatialAutocorrError(Exception):
    """Base class for errors raised by spatialautocorr"""

class InvalidInputError(SpatialAutocorrError, ValueError):
    """
    Malformed or mismatched inputs: wrong shapes, fewer than two locations,
    non-finite values or coincident locations under inverse-distance weighting.
    """

class DegenerateInputError(SpatialAutocorrError, ValueError):
    """
    The statistic is undefined for this input: the expression vector is
    constant across locations, or the weight matrix has no weight at all.
    """
