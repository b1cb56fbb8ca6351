import logging
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, List

import numpy as np
from tqdm import tqdm

logger = logging.getLogger('spatialautocorr.utils.parallel')

BACKENDS = ('serial', 'threads', 'processes')

def _call(func, kwargs, item):
    return func(item, **kwargs)

def parallelize(func: Callable, items: List[Any], n_jobs: int = 1,
                backend: str = 'threads', show_progress: bool = False,
                desc: str = "Processing", **kwargs) -> List[Any]:
    """
    Run a function in parallel over a list of items
    
    Parameters
    ----------
    func : callable
        Function to apply to each item. Must be picklable for the
        'processes' backend
    items : list
        List of items to process
    n_jobs : int, optional
        Number of parallel jobs. -1 means use all available cores
    backend : str, optional
        Backend to use. Options: 'serial', 'threads', 'processes'
    show_progress : bool, optional
        Whether to show a progress bar
    desc : str, optional
        Description for the progress bar
    **kwargs
        Additional arguments to pass to func
    
    Returns
    -------
    List[Any]
        Results of applying func to each item, in input order
    """
    if backend not in BACKENDS:
        raise ValueError(f"Unsupported backend: {backend}")
    if not items:
        return []
    if n_jobs is None or n_jobs <= 0:
        n_jobs = mp.cpu_count()
    n_jobs = min(n_jobs, len(items))
    
    logger.debug(f"Running {len(items)} tasks with {n_jobs} parallel jobs using {backend} backend")
    task = partial(_call, func, kwargs)
    
    if backend == 'serial' or n_jobs == 1:
        iterator = tqdm(items, desc=desc) if show_progress else items
        return [task(item) for item in iterator]
    
    executor_cls = ProcessPoolExecutor if backend == 'processes' else ThreadPoolExecutor
    with executor_cls(max_workers=n_jobs) as executor:
        mapped = executor.map(task, items)
        if show_progress:
            mapped = tqdm(mapped, total=len(items), desc=desc)
        results = list(mapped)
    
    return results

def split_chunks(n_items: int, chunk_size: int) -> List[slice]:
    """
    Split range(n_items) into contiguous slices of at most chunk_size items
    
    Parameters
    ----------
    n_items : int
        Number of items
    chunk_size : int
        Maximum number of items per chunk
    
    Returns
    -------
    list of slice
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")
    return [slice(start, min(start + chunk_size, n_items)) for start in range(0, n_items, chunk_size)]

def spawn_seeds(seed, n: int) -> List[np.random.SeedSequence]:
    """Independent seed sequences, one per task, so results do not depend on scheduling"""
    return np.random.SeedSequence(seed).spawn(n)
