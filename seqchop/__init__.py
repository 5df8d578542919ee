"""
seqchop: k-mer counting and guide trees for sequence clustering

Counts distinct k-mer or minimizer hashes per cluster of sequence files with a
bounded reader/worker pipeline, and builds neighbour-joining guide trees from
distance matrices.
"""

__version__ = "0.1.0"

from .config import CountConfig
from .sequence_source import (
    SequenceSource,
    FileSequenceSource,
    InMemorySequenceSource,
    SequenceSourceError,
    encode_dna4
)
from .hashing import (
    HashScheme,
    KmerHashScheme,
    MinimizerHashScheme,
    make_hash_scheme,
    count_distinct_hashes
)
from .scheduler import (
    Cluster,
    ResultSink,
    ConcurrentClusterScheduler,
    CountingSummary,
    ClusterCountingError,
    count_kmers
)
from .neighbour_joining import (
    GuideTree,
    TreeEdge,
    NeighbourJoiningTreeBuilder,
    neighbour_joining,
    round_to_significant_figures
)
from .utils import load_filename_clusters, load_distance_matrix

__all__ = [
    "CountConfig",
    "SequenceSource",
    "FileSequenceSource",
    "InMemorySequenceSource",
    "SequenceSourceError",
    "encode_dna4",
    "HashScheme",
    "KmerHashScheme",
    "MinimizerHashScheme",
    "make_hash_scheme",
    "count_distinct_hashes",
    "Cluster",
    "ResultSink",
    "ConcurrentClusterScheduler",
    "CountingSummary",
    "ClusterCountingError",
    "count_kmers",
    "GuideTree",
    "TreeEdge",
    "NeighbourJoiningTreeBuilder",
    "neighbour_joining",
    "round_to_significant_figures",
    "load_filename_clusters",
    "load_distance_matrix"
]
