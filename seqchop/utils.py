"""
Utility functions for seqchop.

This module provides helpers for loading cluster definitions and distance
matrices from files.
"""

import logging
from typing import Dict, List

import numpy as np

logger = logging.getLogger(__name__)


def load_filename_clusters(clusters_path: str) -> Dict[str, List[str]]:
    """
    Load cluster definitions from a tab separated file.

    Each line holds ``<sequence file path>\\t<cluster id>``. Blank lines and
    lines starting with '#' are ignored. Clusters are returned in order of
    first appearance, with their files in file order.

    Args:
        clusters_path: Path to the clusters file

    Returns:
        Dict mapping cluster id to its list of sequence file paths

    Raises:
        ValueError: If a line does not have a path and a cluster id
    """
    clusters: Dict[str, List[str]] = {}

    with open(clusters_path) as f:
        for line_number, line in enumerate(f, start=1):
            line = line.rstrip('\r\n')
            if not line.strip() or line.startswith('#'):
                continue

            fields = line.split('\t')
            if len(fields) < 2 or not fields[0] or not fields[1]:
                raise ValueError(f"{clusters_path}:{line_number}: expected '<path>\\t<cluster id>', got {line!r}")

            path, cluster_id = fields[0], fields[1]
            clusters.setdefault(cluster_id, []).append(path)

    logger.debug(f"Loaded {len(clusters)} clusters from {clusters_path}")
    return clusters


def load_distance_matrix(matrix_path: str) -> np.ndarray:
    """
    Load a square distance matrix from a CSV file as a flat row-major array.

    Args:
        matrix_path: Path to a comma separated matrix file

    Returns:
        Flat float64 array of length n*n
    """
    distance_matrix = np.loadtxt(matrix_path, delimiter=',', ndmin=2)
    logger.info(f"Loaded {distance_matrix.shape[0]} x {distance_matrix.shape[1]} distance matrix")
    return distance_matrix.reshape(-1)
