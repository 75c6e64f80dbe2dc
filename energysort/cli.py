"""Command line entry point: sort a .npy array of trials."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

import numpy as np

from energysort.config import (
    ClusteringConfig,
    DetectionConfig,
    DetectionMethod,
    SortingConfiguration,
)
from energysort.core import EnergySort
from energysort.errors import SortingError

logger = logging.getLogger("energysort")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Detect, overcluster and aggregate spikes with energysort.')

    # Input data arguments
    parser.add_argument('data', type=str,
                        help='.npy file holding [trials x samples x channels] or [samples x channels]')
    parser.add_argument('--sampling-rate', type=float, default=30000.0,
                        help='Sampling rate in Hz (default: 30000)')

    # Detection settings
    parser.add_argument('--method', type=str, choices=[m.value for m in DetectionMethod],
                        default='auto', help='Threshold method (default: auto)')
    parser.add_argument('--thresh', type=float, nargs='+', default=[4.0],
                        help='Noise multiple, or per-channel voltages in manual mode (default: 4)')
    parser.add_argument('--window-size', type=float, default=1.5,
                        help='Waveform window in ms (default: 1.5)')
    parser.add_argument('--shadow', type=float, default=0.75,
                        help='Minimum spacing between events in ms (default: 0.75)')

    # Clustering settings
    parser.add_argument('--divisions', type=int, default=None,
                        help='log2 of the number of miniclusters (default: from the data size)')
    parser.add_argument('--reps', type=int, default=1,
                        help='Independent k-means runs (default: 1)')
    parser.add_argument('--jobs', type=int, default=0,
                        help='Number of threads (default: number of CPU cores - 1)')
    parser.add_argument('--seed', type=int, default=None, help='Random seed')

    # Curation and output
    parser.add_argument('--filter-rpv', action='store_true',
                        help='Remove refractory period violations after sorting')
    parser.add_argument('--output', type=str, default=None,
                        help='Write the event table to this CSV file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    args = parser.parse_args(argv)

    if not os.path.exists(args.data):
        parser.error(f"Data file not found: {args.data}")

    return args


def create_config_from_args(args: argparse.Namespace) -> SortingConfiguration:
    """Create a SortingConfiguration from command line arguments."""
    thresh = args.thresh[0] if len(args.thresh) == 1 else args.thresh
    n_jobs = args.jobs if args.jobs > 0 else max(1, (os.cpu_count() or 2) - 1)

    return SortingConfiguration(
        detection=DetectionConfig(
            sampling_rate=args.sampling_rate,
            method=args.method,
            thresh=thresh,
            window_size=args.window_size,
            shadow=args.shadow,
        ),
        clustering=ClusteringConfig(divisions=args.divisions, reps=args.reps),
        n_jobs=n_jobs,
        random_state=args.seed,
        filter_rpv=args.filter_rpv,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(name)s %(levelname)s: %(message)s',
    )

    try:
        config = create_config_from_args(args)
        data = np.load(args.data)
        print(f"Loaded data shape: {data.shape}")

        sorter = EnergySort(config)
        results = sorter.run(data)
    except SortingError as e:
        logger.error(f"Error during spike sorting: {e}")
        return 1

    summary = results.summary()
    print("\nSorting Results Summary:")
    print(f"Trials: {summary['total_trials']}")
    print(f"Events detected: {summary['total_events']} ({summary['event_rate']:.2f} per second)")
    print(f"Feature dimensions: {summary['feature_dims']}")
    print(f"Miniclusters: {summary['total_clusters']}")
    print(f"Execution time: {summary['execution_time']:.2f} seconds")
    for cluster_id, size in summary['cluster_sizes'].items():
        print(f"  Cluster {cluster_id}: {size} events")

    if args.output:
        results.to_dataframe().to_csv(args.output, index=False)
        print(f"\nEvent table saved to {args.output}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
