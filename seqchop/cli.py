"""
Command-line interface for seqchop k-mer counting.
"""

import argparse
import logging
import sys
from pathlib import Path

from .config import CountConfig
from .scheduler import ClusterCountingError, count_kmers
from .utils import load_filename_clusters


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def main():
    """Main entry point for the seqchop-count CLI."""
    parser = argparse.ArgumentParser(
        description='seqchop-count: count distinct k-mer or minimizer hashes per cluster of sequence files',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
The clusters file has one '<sequence file>\\t<cluster id>' pair per line.
Records are written to standard output as
  file1[;file2...]\\t<distinct count>\\t<cluster id>

Examples:
  seqchop-count clusters.tsv                     # Minimizers, k=25, w=25
  seqchop-count clusters.tsv -k 19 -w 31 -t 8
  seqchop-count clusters.tsv --disable-minimizers -k 21 > counts.tsv
        """
    )

    parser.add_argument(
        'clusters',
        help='Tab separated file mapping sequence files (FASTA/FASTQ, optionally gzipped) to cluster ids'
    )
    parser.add_argument(
        '-k', '--kmer-size',
        type=int,
        default=25,
        help='k-mer size (default: 25)'
    )
    parser.add_argument(
        '-w', '--window-size',
        type=int,
        default=25,
        help='Minimizer window size in bases, must be >= k (default: 25)'
    )
    parser.add_argument(
        '--disable-minimizers',
        action='store_true',
        help='Count all k-mers instead of window minimizers'
    )
    parser.add_argument(
        '-t', '--threads',
        type=int,
        default=1,
        help='Number of threads; one reads files, the rest hash (default: 1)'
    )
    parser.add_argument(
        '--fail-fast',
        action='store_true',
        help='Abort on the first unreadable cluster instead of reporting it and continuing'
    )
    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Disable the progress bar'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    setup_logging(args.verbose)

    try:
        clusters_path = Path(args.clusters)
        if not clusters_path.exists():
            logging.error(f"Clusters file not found: {args.clusters}")
            sys.exit(1)

        config = CountConfig(
            num_threads=args.threads,
            k=args.kmer_size,
            w=args.window_size,
            disable_minimizers=args.disable_minimizers,
            show_progress=not args.no_progress,
            isolate_failures=not args.fail_fast,
        )

        filename_clusters = load_filename_clusters(str(clusters_path))
        logging.info(f"Loaded {len(filename_clusters)} clusters from {args.clusters}")

        summary = count_kmers(filename_clusters, config)

        if summary.failed:
            logging.error(f"{len(summary.failed)} cluster(s) could not be counted:")
            for cluster_id, message in summary.failed.items():
                logging.error(f"  {cluster_id}: {message}")
            sys.exit(1)

        logging.debug("Done!")

    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(1)
    except (OSError, ValueError, ClusterCountingError) as e:
        logging.error(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
