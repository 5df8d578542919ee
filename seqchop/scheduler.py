"""
Concurrent distinct-hash counting over clusters of sequence files.

One reader thread materializes the sequences of each cluster and hands them
to a fixed pool of hashing workers through a bounded buffer, so reading
cluster k+1 overlaps hashing cluster k. A full buffer blocks the reader, an
empty one blocks the workers. Every finished cluster is written as one record
to a shared ResultSink.
"""

import logging
import queue
import sys
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, TextIO, Tuple

from tqdm import tqdm

from .config import CountConfig
from .hashing import HashScheme, count_distinct_hashes, make_hash_scheme
from .sequence_source import FileSequenceSource, SequenceSource, SequenceSourceError

logger = logging.getLogger(__name__)

# Marks the end of intake for one worker
_END_OF_INPUT = object()


class ClusterCountingError(Exception):
    """Raised when a counting run is aborted by a reader or worker failure."""

    def __init__(self, message: str, cluster_id: Optional[str] = None):
        super().__init__(message)
        self.cluster_id = cluster_id


@dataclass(frozen=True)
class Cluster:
    """A named group of sequence sources hashed together."""
    cluster_id: str
    members: Tuple[str, ...]

    def __post_init__(self):
        if isinstance(self.members, str):
            raise TypeError(f"Cluster {self.cluster_id} members must be a sequence of source ids, not a string")
        object.__setattr__(self, 'members', tuple(self.members))
        if not self.members:
            raise ValueError(f"Cluster {self.cluster_id} has no members")


@dataclass
class CountingSummary:
    """Outcome of a counting run."""
    counts: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)  # cluster_id -> error message
    stopped: bool = False

    @property
    def complete(self) -> bool:
        """True if every cluster produced a record."""
        return not self.failed and not self.stopped


class ResultSink:
    """Writes one tab separated record per cluster to a shared stream.

    Record format: ``member1[;member2...]<TAB>count<TAB>cluster_id``. A single
    lock is held while a record is written, so records never interleave.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream if stream is not None else sys.stdout
        self._lock = threading.Lock()

    @staticmethod
    def format_record(cluster: Cluster, count: int) -> str:
        return f"{';'.join(cluster.members)}\t{count}\t{cluster.cluster_id}\n"

    def emit(self, cluster: Cluster, count: int) -> None:
        with self._lock:
            self.stream.write(self.format_record(cluster, count))
            self.stream.flush()


class ConcurrentClusterScheduler:
    """Bounded reader/worker pipeline delivering each cluster to one worker.

    Args:
        clusters: Clusters in intake order
        source: Sequence source used by the reader stage
        scheme: Hash scheme applied by every worker
        sink: Destination of the per-cluster records
        num_workers: Number of hashing threads (>= 1)
        buffer_size: Capacity of the reader->worker buffer (default: num_workers)
        isolate_failures: Report unreadable clusters and continue with the
            rest; if False the first read failure aborts the run
        show_progress: Show a tqdm progress bar over finished clusters
        logger: Optional logger instance; uses the module logger if None
    """

    def __init__(self,
                 clusters: Sequence[Cluster],
                 source: SequenceSource,
                 scheme: HashScheme,
                 sink: ResultSink,
                 num_workers: int = 1,
                 buffer_size: Optional[int] = None,
                 isolate_failures: bool = True,
                 show_progress: bool = False,
                 logger: Optional[logging.Logger] = None):
        if num_workers < 1:
            raise ValueError(f"num_workers must be positive, got {num_workers}")
        if buffer_size is not None and buffer_size < 1:
            raise ValueError(f"buffer_size must be positive, got {buffer_size}")

        self.clusters = list(clusters)
        self.source = source
        self.scheme = scheme
        self.sink = sink
        self.num_workers = num_workers
        self.buffer_size = buffer_size or num_workers
        self.isolate_failures = isolate_failures
        self.show_progress = show_progress
        self.logger = logger or logging.getLogger(__name__)

        self._buffer: queue.Queue = queue.Queue(maxsize=self.buffer_size)
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._stop_requested = False
        self._first_error: Optional[Tuple[Optional[str], BaseException]] = None
        self._summary = CountingSummary()
        self._pbar = None
        self._started = False

    def stop(self) -> None:
        """Stop intake; clusters already buffered are still counted."""
        with self._state_lock:
            self._stop_requested = True
        self._stop_event.set()

    def run(self) -> CountingSummary:
        """Count all clusters and return the summary.

        Raises:
            ClusterCountingError: The first fatal failure, after all threads
                have finished
        """
        if self._started:
            raise RuntimeError("A scheduler can only be run once")
        self._started = True

        self.logger.info(f"Counting {len(self.clusters)} clusters with {self.num_workers} "
                         f"worker(s) and {self.scheme}")

        self._pbar = tqdm(total=len(self.clusters), desc="Counting", unit=" clusters",
                          disable=not self.show_progress)

        threads = [threading.Thread(target=self._read_stage, name="seqchop-reader", daemon=True)]
        for i in range(self.num_workers):
            threads.append(threading.Thread(target=self._work, name=f"seqchop-worker-{i}", daemon=True))

        for thread in threads:
            thread.start()

        try:
            for thread in threads:
                thread.join()
        except KeyboardInterrupt:
            self.logger.info("Interrupted, finishing clusters already read")
            self.stop()
            for thread in threads:
                thread.join()
            raise
        finally:
            self._pbar.close()

        if self._first_error is not None:
            cluster_id, error = self._first_error
            where = f" in cluster {cluster_id}" if cluster_id is not None else ""
            raise ClusterCountingError(f"Counting failed{where}: {error}", cluster_id=cluster_id) from error

        self._summary.stopped = self._stop_requested
        self.logger.info(f"Counted {len(self._summary.counts)} clusters"
                         + (f", {len(self._summary.failed)} failed" if self._summary.failed else ""))
        return self._summary

    def _record_error(self, cluster_id: Optional[str], error: BaseException) -> None:
        with self._state_lock:
            if self._first_error is None:
                self._first_error = (cluster_id, error)
                self.logger.error(f"Stopping intake after failure in cluster {cluster_id}: {error}")
            else:
                self.logger.error(f"Additional failure in cluster {cluster_id}: {error}")
        self._stop_event.set()

    def _read_stage(self) -> None:
        try:
            for cluster in self.clusters:
                if self._stop_event.is_set():
                    self.logger.debug("Intake stopped")
                    break

                try:
                    sequences = self.source.read_cluster(cluster.members)
                except SequenceSourceError as e:
                    if not self.isolate_failures:
                        self._record_error(cluster.cluster_id, e)
                        break
                    self.logger.warning(f"Skipping cluster {cluster.cluster_id}: {e}")
                    with self._state_lock:
                        self._summary.failed[cluster.cluster_id] = str(e)
                        self._pbar.update(1)
                    continue
                except Exception as e:
                    self._record_error(cluster.cluster_id, e)
                    break

                self.logger.debug(f"Read {len(sequences)} sequences for cluster {cluster.cluster_id}")
                self._buffer.put((cluster, sequences))
        except Exception as e:
            self._record_error(None, e)
        finally:
            for _ in range(self.num_workers):
                self._buffer.put(_END_OF_INPUT)

    def _work(self) -> None:
        while True:
            item = self._buffer.get()
            if item is _END_OF_INPUT:
                break

            cluster, sequences = item
            try:
                count = count_distinct_hashes(sequences, self.scheme)
                self.sink.emit(cluster, count)
            except Exception as e:
                self._record_error(cluster.cluster_id, e)
            else:
                with self._state_lock:
                    self._summary.counts[cluster.cluster_id] = count
            finally:
                with self._state_lock:
                    self._pbar.update(1)


def count_kmers(filename_clusters: Dict[str, List[str]],
                config: CountConfig,
                sink: Optional[ResultSink] = None,
                source: Optional[SequenceSource] = None) -> CountingSummary:
    """Count distinct k-mer/minimizer hashes for every cluster of files.

    Args:
        filename_clusters: Mapping cluster id -> ordered sequence file paths
        config: Counting configuration
        sink: Record destination (default: standard output)
        source: Sequence source (default: FASTA/FASTQ files)

    Returns:
        CountingSummary of the run
    """
    clusters = [Cluster(cluster_id, members) for cluster_id, members in filename_clusters.items()]

    scheduler = ConcurrentClusterScheduler(
        clusters,
        source=source if source is not None else FileSequenceSource(),
        scheme=make_hash_scheme(config),
        sink=sink if sink is not None else ResultSink(),
        num_workers=config.counting_threads,
        isolate_failures=config.isolate_failures,
        show_progress=config.show_progress,
    )
    return scheduler.run()
