"""
Tests for the concurrent cluster counting pipeline.
"""

import gzip
import io
import threading
import time

import pytest

from seqchop.config import CountConfig
from seqchop.hashing import KmerHashScheme, MinimizerHashScheme, count_distinct_hashes
from seqchop.scheduler import (
    Cluster,
    ClusterCountingError,
    ConcurrentClusterScheduler,
    CountingSummary,
    ResultSink,
    count_kmers
)
from seqchop.sequence_source import InMemorySequenceSource, SequenceSourceError, encode_dna4


SEQUENCES = {
    "a.fa": ["ACGTACGTTGCA", "GGGGCCCCAAAT"],
    "b.fa": ["ACGTACGTTGCA"],
    "c.fa": ["TTTTTTTTTT", "GATTACAGATTACA"],
    "d.fa": ["CAGTCAGTCAGTTTGACC"],
    "e.fa": [""],
}

CLUSTERS = {
    "c1": ["a.fa", "b.fa"],
    "c2": ["c.fa"],
    "c3": ["d.fa", "a.fa", "c.fa"],
    "c4": ["e.fa"],
    "c5": ["b.fa"],
}


def parse_records(text):
    """Parse sink output into {cluster_id: (members, count)}."""
    records = {}
    for line in text.splitlines():
        members, count, cluster_id = line.split('\t')
        records[cluster_id] = (members.split(';'), int(count))
    return records


def reference_counts(scheme):
    counts = {}
    for cluster_id, members in CLUSTERS.items():
        sequences = [encode_dna4(s) for member in members for s in SEQUENCES[member]]
        counts[cluster_id] = count_distinct_hashes(sequences, scheme)
    return counts


def make_scheduler(scheme, stream, num_workers=1, source=None, **kwargs):
    clusters = [Cluster(cluster_id, members) for cluster_id, members in CLUSTERS.items()]
    return ConcurrentClusterScheduler(
        clusters,
        source=source or InMemorySequenceSource(SEQUENCES),
        scheme=scheme,
        sink=ResultSink(stream),
        num_workers=num_workers,
        **kwargs
    )


class TestCluster:
    """Test cluster construction."""

    def test_members_are_tuple(self):
        cluster = Cluster("c", ["x", "y"])
        assert cluster.members == ("x", "y")

    def test_empty_cluster_rejected(self):
        with pytest.raises(ValueError, match="no members"):
            Cluster("empty", [])

    def test_string_members_rejected(self):
        """Test that a bare path is not split into single characters."""
        with pytest.raises(TypeError, match="not a string"):
            Cluster("c", "a.fa")


class TestResultSink:
    """Test record formatting and serialization."""

    def test_record_format(self):
        stream = io.StringIO()
        ResultSink(stream).emit(Cluster("c7", ["x.fa", "y.fa", "z.fa"]), 42)
        assert stream.getvalue() == "x.fa;y.fa;z.fa\t42\tc7\n"

    def test_single_member(self):
        assert ResultSink.format_record(Cluster("c", ["only.fq"]), 0) == "only.fq\t0\tc\n"

    def test_concurrent_records_do_not_interleave(self):
        """Test that records written from many threads stay intact."""

        class ChunkedStream(io.StringIO):
            def write(self, text):
                # Write in pieces to give other threads a chance to interleave
                for char in text:
                    super().write(char)
                    time.sleep(0)
                return len(text)

        stream = ChunkedStream()
        sink = ResultSink(stream)
        clusters = [Cluster(f"c{i}", [f"f{i}a", f"f{i}b"]) for i in range(40)]

        threads = [threading.Thread(target=sink.emit, args=(cluster, i)) for i, cluster in enumerate(clusters)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        records = parse_records(stream.getvalue())
        assert len(records) == 40
        for i in range(40):
            assert records[f"c{i}"] == ([f"f{i}a", f"f{i}b"], i)


class TestConcurrentClusterScheduler:
    """Test the reader/worker pipeline."""

    @pytest.mark.parametrize("num_workers", [1, 2, 8])
    def test_counts_match_reference(self, num_workers):
        """Test that every worker count gives the single-threaded counts."""
        scheme = MinimizerHashScheme(k=3, w=5)
        stream = io.StringIO()

        summary = make_scheduler(scheme, stream, num_workers=num_workers).run()

        expected = reference_counts(scheme)
        records = parse_records(stream.getvalue())
        assert {cid: count for cid, (_, count) in records.items()} == expected
        assert summary.counts == expected
        assert summary.complete

    def test_records_keep_member_order(self):
        stream = io.StringIO()
        make_scheduler(KmerHashScheme(4), stream, num_workers=2).run()

        records = parse_records(stream.getvalue())
        for cluster_id, members in CLUSTERS.items():
            assert records[cluster_id][0] == members

    def test_repeated_runs_identical(self):
        """Test that two runs on the same input give the same counts."""
        scheme = KmerHashScheme(3)
        first = make_scheduler(scheme, io.StringIO(), num_workers=4).run()
        second = make_scheduler(scheme, io.StringIO(), num_workers=4).run()
        assert first.counts == second.counts

    def test_each_cluster_delivered_once(self):
        """Test that no cluster is emitted twice or dropped."""
        clusters = [Cluster(f"c{i}", ["a.fa"]) for i in range(50)]
        stream = io.StringIO()
        scheduler = ConcurrentClusterScheduler(
            clusters, InMemorySequenceSource(SEQUENCES), KmerHashScheme(3),
            ResultSink(stream), num_workers=3
        )

        scheduler.run()

        ids = [line.split('\t')[2] for line in stream.getvalue().splitlines()]
        assert sorted(ids) == sorted(c.cluster_id for c in clusters)

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            make_scheduler(KmerHashScheme(3), io.StringIO(), num_workers=0)

    def test_run_only_once(self):
        scheduler = make_scheduler(KmerHashScheme(3), io.StringIO())
        scheduler.run()
        with pytest.raises(RuntimeError):
            scheduler.run()

    def test_buffer_applies_backpressure(self):
        """Test that the reader blocks while the buffer is full."""
        release = threading.Event()
        reads = []

        class RecordingSource(InMemorySequenceSource):
            def read_cluster(self, source_ids):
                reads.append(tuple(source_ids))
                return super().read_cluster(source_ids)

        class BlockingSink(ResultSink):
            def emit(self, cluster, count):
                release.wait(timeout=10)
                super().emit(cluster, count)

        clusters = [Cluster(f"c{i}", ["a.fa"]) for i in range(10)]
        scheduler = ConcurrentClusterScheduler(
            clusters, RecordingSource(SEQUENCES), KmerHashScheme(3),
            BlockingSink(io.StringIO()), num_workers=1, buffer_size=1
        )

        runner = threading.Thread(target=scheduler.run)
        runner.start()
        time.sleep(0.3)

        # One cluster in the worker, one buffered, one waiting to be put
        assert len(reads) <= 3

        release.set()
        runner.join(timeout=10)
        assert not runner.is_alive()
        assert len(reads) == 10


class TestFailureHandling:
    """Test failure isolation and propagation."""

    def test_read_failure_isolated(self):
        """Test that an unreadable cluster is reported and others continue."""
        sequences = dict(SEQUENCES)
        del sequences["c.fa"]
        stream = io.StringIO()

        summary = make_scheduler(KmerHashScheme(3), stream, num_workers=2,
                                 source=InMemorySequenceSource(sequences)).run()

        records = parse_records(stream.getvalue())
        assert set(summary.failed) == {"c2", "c3"}
        assert set(records) == {"c1", "c4", "c5"}
        assert set(summary.counts) == {"c1", "c4", "c5"}
        assert not summary.complete

    def test_read_failure_fatal_without_isolation(self):
        sequences = dict(SEQUENCES)
        del sequences["c.fa"]

        with pytest.raises(ClusterCountingError) as exc_info:
            make_scheduler(KmerHashScheme(3), io.StringIO(), num_workers=2,
                           source=InMemorySequenceSource(sequences),
                           isolate_failures=False).run()

        assert exc_info.value.cluster_id == "c2"
        assert isinstance(exc_info.value.__cause__, SequenceSourceError)

    def test_worker_failure_propagates(self):
        """Test that the first worker error is raised after all threads stop."""

        class FailingScheme(KmerHashScheme):
            def hash_values(self, ranks):
                if len(ranks) == 10:
                    raise RuntimeError("hashing exploded")
                return super().hash_values(ranks)

        stream = io.StringIO()
        with pytest.raises(ClusterCountingError, match="hashing exploded") as exc_info:
            make_scheduler(FailingScheme(3), stream, num_workers=3).run()

        assert exc_info.value.cluster_id in {"c2", "c3"}
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "c2" not in parse_records(stream.getvalue())

    def test_stop_drains_buffered_clusters(self):
        """Test cooperative shutdown: intake stops, read clusters finish."""
        holder = {}

        class StoppingSource(InMemorySequenceSource):
            def read_cluster(self, source_ids):
                sequences = super().read_cluster(source_ids)
                holder["scheduler"].stop()
                return sequences

        stream = io.StringIO()
        scheduler = make_scheduler(KmerHashScheme(3), stream, num_workers=2,
                                   source=StoppingSource(SEQUENCES))
        holder["scheduler"] = scheduler

        summary = scheduler.run()

        assert summary.stopped
        assert not summary.complete
        assert list(summary.counts) == ["c1"]
        assert list(parse_records(stream.getvalue())) == ["c1"]

    def test_truncated_gzip_isolated(self, tmp_path):
        """Test that a damaged gzip input only fails its own cluster."""
        bad = tmp_path / "bad.fa.gz"
        with gzip.open(bad, 'wt') as f:
            for i in range(200):
                f.write(f">s{i}\n{'GATTACACCGTAGCTA' * (i % 5 + 1)}\n")
        data = bad.read_bytes()
        bad.write_bytes(data[:len(data) // 2])
        good = tmp_path / "good.fa"
        good.write_text(">s\nACGTAC\n")
        stream = io.StringIO()

        summary = count_kmers({"bad": [str(bad)], "good": [str(good)]},
                              CountConfig(num_threads=3, k=3, disable_minimizers=True),
                              sink=ResultSink(stream))

        assert set(summary.failed) == {"bad"}
        assert summary.counts == {"good": 4}
        assert set(parse_records(stream.getvalue())) == {"good"}

    def test_unexpected_read_error_keeps_cluster(self):
        """Test that any exception from a source is attributed to its cluster."""

        class BrokenSource(InMemorySequenceSource):
            def read_cluster(self, source_ids):
                raise RuntimeError("source went away")

        with pytest.raises(ClusterCountingError, match="in cluster c1") as exc_info:
            make_scheduler(KmerHashScheme(3), io.StringIO(), num_workers=2,
                           source=BrokenSource(SEQUENCES)).run()

        assert exc_info.value.cluster_id == "c1"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_progress_counts_failed_clusters(self):
        """Test that clusters whose output fails still advance the progress bar."""
        emitted = []

        class FailingSink(ResultSink):
            def emit(self, cluster, count):
                emitted.append(cluster.cluster_id)
                if cluster.cluster_id == "c2":
                    raise OSError("disk full")
                super().emit(cluster, count)

        clusters = [Cluster(cluster_id, members) for cluster_id, members in CLUSTERS.items()]
        scheduler = ConcurrentClusterScheduler(clusters, InMemorySequenceSource(SEQUENCES),
                                               KmerHashScheme(3), FailingSink(io.StringIO()),
                                               num_workers=2, show_progress=True)

        with pytest.raises(ClusterCountingError, match="disk full"):
            scheduler.run()

        assert "c2" in emitted
        assert scheduler._pbar.n == len(emitted)


class TestCountKmers:
    """Test the count_kmers entry point."""

    def test_count_kmers_from_files(self, tmp_path):
        (tmp_path / "x.fa").write_text(">s\nACGTAC\n")
        (tmp_path / "y.fq").write_text("@r\nACGTTT\n+\nIIIIII\n")
        clusters = {
            "both": [str(tmp_path / "x.fa"), str(tmp_path / "y.fq")],
            "x": [str(tmp_path / "x.fa")],
        }
        stream = io.StringIO()

        summary = count_kmers(clusters, CountConfig(num_threads=3, k=3, disable_minimizers=True),
                              sink=ResultSink(stream))

        # ACG CGT GTA TAC | ACG CGT GTT TTT
        assert summary.counts == {"both": 6, "x": 4}
        records = parse_records(stream.getvalue())
        assert records["both"][0] == clusters["both"]

    def test_empty_cluster_fails_before_work(self):
        sink_stream = io.StringIO()
        with pytest.raises(ValueError):
            count_kmers({"ok": ["a.fa"], "bad": []}, CountConfig(k=3, w=3),
                        sink=ResultSink(sink_stream), source=InMemorySequenceSource(SEQUENCES))
        assert sink_stream.getvalue() == ""

    def test_summary_defaults(self):
        summary = CountingSummary()
        assert summary.complete
        assert summary.counts == {}
