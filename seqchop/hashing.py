"""
Hash schemes and per-cluster distinct hash counting.

Sequences arrive as dna4 rank arrays (see sequence_source). A hash scheme
turns one sequence into its k-mer or minimizer hash values; counting takes
the union over all sequences of a cluster and reports its size.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Iterator, Set

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .config import CountConfig

logger = logging.getLogger(__name__)

# Seed XOR-ed into every k-mer hash before minimizers are picked
MINIMIZER_SEED = np.uint64(0x8F3F73B5CF1C9ADE)

_EMPTY = np.empty(0, dtype=np.uint64)
_TWO = np.uint64(2)


def kmer_hashes(ranks: np.ndarray, k: int) -> np.ndarray:
    """2-bit pack every k-mer of a rank array, first base most significant."""
    n_kmers = len(ranks) - k + 1
    if n_kmers <= 0:
        return _EMPTY

    wide = ranks.astype(np.uint64)
    values = np.zeros(n_kmers, dtype=np.uint64)
    for offset in range(k):
        values = (values << _TWO) | wide[offset:offset + n_kmers]
    return values


def reverse_complement_hashes(ranks: np.ndarray, k: int) -> np.ndarray:
    """Hash of the reverse complement of each forward k-mer, aligned to it."""
    complement = (3 - ranks)[::-1]
    return kmer_hashes(complement, k)[::-1]


class HashScheme(ABC):
    """Abstract base class for hash schemes."""

    @abstractmethod
    def hash_values(self, ranks: np.ndarray) -> np.ndarray:
        """Return all hash values of one sequence as a uint64 array."""
        pass

    def iter_hashes(self, ranks: np.ndarray) -> Iterator[int]:
        """Lazily yield the hash values of one sequence."""
        for value in self.hash_values(ranks):
            yield int(value)


@dataclass(frozen=True)
class KmerHashScheme(HashScheme):
    """One hash per k-length substring."""
    k: int

    def hash_values(self, ranks: np.ndarray) -> np.ndarray:
        return kmer_hashes(ranks, self.k)


@dataclass(frozen=True)
class MinimizerHashScheme(HashScheme):
    """One representative hash per window of w bases.

    Each window covers w - k + 1 consecutive k-mers. A k-mer's value is the
    smaller of its forward and reverse complement hash, both XOR-ed with
    MINIMIZER_SEED. The window representative is the minimum value (ties go
    to the leftmost k-mer), and runs of the same representative from
    neighbouring windows are reported once.
    """
    k: int
    w: int
    seed: int = int(MINIMIZER_SEED)

    def __post_init__(self):
        if self.w < self.k:
            raise ValueError(f"Window size w ({self.w}) must be at least k ({self.k})")

    def hash_values(self, ranks: np.ndarray) -> np.ndarray:
        window_kmers = self.w - self.k + 1
        if len(ranks) < self.w:
            return _EMPTY

        seed = np.uint64(self.seed)
        forward = kmer_hashes(ranks, self.k) ^ seed
        reverse = reverse_complement_hashes(ranks, self.k) ^ seed
        canonical = np.minimum(forward, reverse)

        if window_kmers == 1:
            minimizers = canonical
        else:
            minimizers = sliding_window_view(canonical, window_kmers).min(axis=1)

        keep = np.empty(len(minimizers), dtype=bool)
        keep[0] = True
        np.not_equal(minimizers[1:], minimizers[:-1], out=keep[1:])
        return minimizers[keep]


def make_hash_scheme(config: CountConfig) -> HashScheme:
    """Build the hash scheme selected by a counting configuration."""
    if config.disable_minimizers:
        return KmerHashScheme(config.k)
    return MinimizerHashScheme(config.k, config.w)


def distinct_hashes(sequences: Iterable[np.ndarray], scheme: HashScheme) -> Set[int]:
    """Union of the hash values of all sequences."""
    result: Set[int] = set()
    for ranks in sequences:
        values = scheme.hash_values(ranks)
        if len(values):
            result.update(np.unique(values).tolist())
    return result


def count_distinct_hashes(sequences: Iterable[np.ndarray], scheme: HashScheme) -> int:
    """Number of distinct hash values over all sequences of a cluster."""
    return len(distinct_hashes(sequences, scheme))
