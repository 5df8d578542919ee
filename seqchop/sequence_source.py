"""
Sequence sources for seqchop.

A sequence source turns a source identifier (usually a file path) into the
ordered list of sequences it contains, decoded to the 4-letter nucleotide
alphabet as numpy rank arrays (A=0, C=1, G=2, T=3).
"""

import gzip
import logging
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, Iterator, List

import numpy as np
from Bio import SeqIO

logger = logging.getLogger(__name__)


FASTA_EXTENSIONS = {'.fa', '.fasta', '.fna', '.ffn', '.faa', '.frn', '.fas'}
FASTQ_EXTENSIONS = {'.fq', '.fastq'}

# Byte -> rank lookup. Anything that is not a nucleotide decodes to A,
# U is read as T.
_DNA4_TABLE = np.zeros(256, dtype=np.uint8)
for _symbols, _rank in (('Cc', 1), ('Gg', 2), ('TtUu', 3)):
    for _symbol in _symbols:
        _DNA4_TABLE[ord(_symbol)] = _rank


class SequenceSourceError(Exception):
    """Raised when a source identifier cannot be opened or decoded."""
    pass


def encode_dna4(sequence: str) -> np.ndarray:
    """Decode a nucleotide string into a uint8 array of dna4 ranks."""
    raw = np.frombuffer(sequence.encode('ascii', errors='replace'), dtype=np.uint8)
    return _DNA4_TABLE[raw]


def detect_sequence_format(path: str) -> str:
    """Return the Biopython format name for a sequence file path.

    Raises:
        SequenceSourceError: If the extension is not a FASTA or FASTQ one
    """
    suffixes = [s.lower() for s in Path(path).suffixes]
    if suffixes and suffixes[-1] == '.gz':
        suffixes = suffixes[:-1]
    extension = suffixes[-1] if suffixes else ''

    if extension in FASTA_EXTENSIONS:
        return 'fasta'
    if extension in FASTQ_EXTENSIONS:
        return 'fastq'
    raise SequenceSourceError(f"Unsupported sequence file extension for {path}")


class SequenceSource(ABC):
    """Abstract base class for sequence sources."""

    @abstractmethod
    def iter_sequences(self, source_id: str) -> Iterator[np.ndarray]:
        """Yield the decoded sequences of one source in file order."""
        pass

    def read_cluster(self, source_ids: Iterable[str]) -> List[np.ndarray]:
        """Materialize the sequences of all sources of a cluster, in order.

        Raises:
            SequenceSourceError: If any member cannot be read
        """
        sequences = []
        for source_id in source_ids:
            sequences.extend(self.iter_sequences(source_id))
        return sequences


class FileSequenceSource(SequenceSource):
    """Reads FASTA/FASTQ files, optionally gzip-compressed, with Biopython."""

    def iter_sequences(self, source_id: str) -> Iterator[np.ndarray]:
        seq_format = detect_sequence_format(source_id)
        opener = gzip.open if source_id.lower().endswith('.gz') else open

        try:
            with opener(source_id, 'rt', encoding='ascii', errors='replace') as handle:
                for record in SeqIO.parse(handle, seq_format):
                    yield encode_dna4(str(record.seq))
        except (OSError, EOFError, zlib.error, ValueError) as e:
            raise SequenceSourceError(f"Error reading {source_id}: {e}") from e


class InMemorySequenceSource(SequenceSource):
    """Serves sequences already held in memory.

    Args:
        sequences: Mapping from source identifier to its sequence strings.
            Unknown identifiers raise SequenceSourceError.
    """

    def __init__(self, sequences: Dict[str, List[str]]):
        self.sequences = sequences

    def iter_sequences(self, source_id: str) -> Iterator[np.ndarray]:
        if source_id not in self.sequences:
            raise SequenceSourceError(f"Unknown sequence source: {source_id}")
        for sequence in self.sequences[source_id]:
            yield encode_dna4(sequence)
