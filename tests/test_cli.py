# -*- coding: utf-8 -*-
import numpy as np
import pandas as pd
import pytest

from energysort import cli

from recordings import SLOTS


def test_sort_npy_file(tmp_path, capsys, recording):
    trials, _ = recording
    data = tmp_path / "trials.npy"
    output = tmp_path / "events.csv"
    np.save(data, trials)

    status = cli.main([str(data), '--sampling-rate', '10000', '--seed', '1', '--jobs', '2',
                       '--output', str(output)])

    assert status == 0
    assert "Miniclusters:" in capsys.readouterr().out
    table = pd.read_csv(output)
    assert len(table) == trials.shape[0] * len(SLOTS)
    assert table['cluster'].min() == 1


def test_manual_thresholds_from_arguments(tmp_path):
    data = tmp_path / "trials.npy"
    np.save(data, np.zeros((2, 100, 2)))
    args = cli.parse_arguments([str(data), '--method', 'manual', '--thresh', '-20', '-30', '--reps', '3'])
    config = cli.create_config_from_args(args)

    assert config.detection.thresh == [-20.0, -30.0]
    assert config.clustering.reps == 3
    assert config.n_jobs >= 1


def test_sorting_error_exit_status(tmp_path):
    data = tmp_path / "flat.npy"
    np.save(data, np.zeros((2, 1000, 2)))
    # a flat recording has no noise to set a threshold from
    assert cli.main([str(data), '--sampling-rate', '10000']) == 1


def test_missing_data_file(tmp_path):
    with pytest.raises(SystemExit):
        cli.parse_arguments([str(tmp_path / "absent.npy")])
