"""Configuration for the k-mer counting stage."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# A 2-bit packed k-mer has to fit into an unsigned 64-bit integer
MAX_K = 32


@dataclass
class CountConfig:
    """Validated parameters for counting distinct hashes per cluster.

    Args:
        num_threads: Total thread budget. One thread is reserved for reading
            sequence files, the rest hash clusters (at least one).
        k: k-mer size
        w: Minimizer window size in bases (must be >= k)
        disable_minimizers: Count every k-mer instead of window minimizers
        show_progress: Show a tqdm progress bar over finished clusters
        isolate_failures: Report unreadable clusters and keep going instead
            of aborting the whole run
    """
    num_threads: int = 1
    k: int = 25
    w: int = 25
    disable_minimizers: bool = False
    show_progress: bool = False
    isolate_failures: bool = True

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ValueError if the parameters cannot describe a valid run."""
        if self.k < 1:
            raise ValueError(f"k must be positive, got {self.k}")
        if self.k > MAX_K:
            raise ValueError(f"k must be at most {MAX_K} for 64-bit hashes, got {self.k}")
        if not self.disable_minimizers and self.w < self.k:
            raise ValueError(f"Window size w ({self.w}) must be at least k ({self.k})")
        if self.num_threads < 1:
            raise ValueError(f"num_threads must be positive, got {self.num_threads}")

    @property
    def counting_threads(self) -> int:
        """Number of hashing workers."""
        return max(1, self.num_threads - 1)
