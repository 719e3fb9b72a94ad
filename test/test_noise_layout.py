"""
Tests for the channel working set, noise-block store and column layout.
"""
from __future__ import annotations

import numpy as np
import pytest

from conftest import CHANNELS, build_store, make_event, random_correlations
from refit.detector import ChannelMap, ChannelType, channel_type
from refit.errors import ConfigurationError, InvariantViolation
from refit.layout import ColumnLayout
from refit.noise import NoiseBlockStore, NoiseCorrelations, save_noise_correlations, select_channels


# --- Channel classification ---

def test_channel_type_plane_boundaries():
    assert channel_type(0) == ChannelType.U_WIRE
    assert channel_type(37) == ChannelType.U_WIRE
    assert channel_type(38) == ChannelType.V_WIRE
    assert channel_type(76) == ChannelType.U_WIRE
    assert channel_type(151) == ChannelType.V_WIRE
    assert channel_type(152) == ChannelType.APD_GANG
    assert channel_type(225) == ChannelType.APD_GANG
    assert channel_type(-1) == ChannelType.INVALID
    assert channel_type(226) == ChannelType.INVALID


def test_select_channels_excludes_v_wires_and_dead_channels():
    event = make_event()
    assert select_channels(event, ChannelMap()) == CHANNELS

    cmap = ChannelMap(suppressed=frozenset({0}), bad=frozenset({153}))
    assert select_channels(event, cmap) == (1, 2, 152)


# --- Noise store ---

def test_noise_blocks_follow_interleaved_layout(store):
    corr = random_correlations(CHANNELS, range(1, 4), seed=0)
    n = len(CHANNELS)
    assert len(store.blocks) == 3
    assert store.first_apd == 3
    assert list(store.apd_indices) == [3, 4]

    for g, block in enumerate(store.blocks[:-1]):
        assert block.shape == (2 * n, 2 * n)
        assert block.flags.f_contiguous
        rr, ii, ri = corr.rr[g], corr.ii[g], corr.ri[g]
        for i in range(n):
            for j in range(n):
                assert block[2 * i, 2 * j] == rr[i, j]
                assert block[2 * i + 1, 2 * j] == ri[j, i]
                assert block[2 * i, 2 * j + 1] == ri[i, j]
                assert block[2 * i + 1, 2 * j + 1] == ii[i, j]
        np.testing.assert_allclose(block, block.T, atol=1e-14)

    terminal = store.blocks[-1]
    assert terminal.shape == (n, n)
    np.testing.assert_array_equal(terminal, corr.rr[-1])


def test_noise_store_uses_artifact_channel_order():
    corr = random_correlations((153, 0, 152, 1, 2), range(1, 3), seed=5)
    store = NoiseBlockStore.build(channels=(1, 152), correlations=corr, f_min=1, f_max=2, channel_map=ChannelMap())
    np.testing.assert_array_equal(store.blocks[-1], corr.rr[1][np.ix_([3, 2], [3, 2])])
    assert store.first_apd == 1


def test_noise_store_without_apds_has_first_apd_at_end():
    store = build_store(channels=(0, 1), f_min=1, f_max=2)
    assert store.first_apd == 2
    assert list(store.apd_indices) == []


def test_noise_store_rejects_missing_channel_and_frequency():
    corr = random_correlations((0, 1), range(1, 3))
    with pytest.raises(ConfigurationError):
        NoiseBlockStore.build(channels=(0, 5), correlations=corr, f_min=1, f_max=2, channel_map=ChannelMap())
    with pytest.raises(ConfigurationError):
        NoiseBlockStore.build(channels=(0, 1), correlations=corr, f_min=1, f_max=3, channel_map=ChannelMap())


def test_noise_diagonal_has_no_terminal_imaginary_part(store):
    re, im = store.diagonal(2)
    assert re.shape == (3,)
    assert im.shape == (2,)
    assert re[0] == store.blocks[0][4, 4]
    assert im[1] == store.blocks[1][5, 5]
    assert re[-1] == store.blocks[-1][2, 2]


def test_noise_correlations_load_round_trip_and_errors(tmp_path):
    corr = random_correlations((0, 152), range(1, 3))
    path = save_noise_correlations(
        tmp_path / "noise.npz", channels=corr.channels, frequencies=corr.frequencies, rr=corr.rr, ii=corr.ii, ri=corr.ri
    )
    loaded = NoiseCorrelations.load(path)
    np.testing.assert_array_equal(loaded.ri, corr.ri)
    assert loaded.index_of_channel(152) == 1
    assert loaded.index_of_frequency(2) == 1

    with pytest.raises(ConfigurationError):
        NoiseCorrelations.load(tmp_path / "missing.npz")

    partial = tmp_path / "partial.npz"
    np.savez(partial, channels=corr.channels, frequencies=corr.frequencies, rr=corr.rr)
    with pytest.raises(ConfigurationError):
        NoiseCorrelations.load(partial)

    with pytest.raises(ConfigurationError):
        NoiseCorrelations(channels=corr.channels, frequencies=corr.frequencies, rr=corr.rr[:, :1], ii=corr.ii, ri=corr.ri)


# --- Column layout ---

def test_layout_lengths():
    layout = ColumnLayout(n_channels=5, n_freq=3, n_wire_signals=2)
    assert layout.noise_length == 2 * 5 * 2 + 5
    assert layout.column_length == layout.noise_length + 3
    assert layout.n_columns == 3
    assert layout.template_length == 5
    assert [layout.block_dim(g) for g in range(3)] == [10, 10, 5]
    assert layout.block_slice(2) == slice(20, 25)
    assert sum(layout.block_dim(g) for g in range(3)) == layout.noise_length


def test_channel_rows_partition_the_noise_portion():
    layout = ColumnLayout(n_channels=4, n_freq=3, n_wire_signals=1)
    rows = np.concatenate([layout.channel_rows(c) for c in range(4)])
    assert sorted(rows.tolist()) == list(range(layout.noise_length))

    r = layout.channel_rows(1)
    assert r.tolist() == [2, 3, 10, 11, 16 + 1]


def test_channel_rows_single_frequency_is_real_only():
    layout = ColumnLayout(n_channels=2, n_freq=1, n_wire_signals=0)
    assert layout.template_length == 1
    assert layout.channel_rows(1).tolist() == [1]
    assert layout.light_lagrange_row == 2


def test_layout_rhs_and_bundle_checks():
    layout = ColumnLayout(n_channels=2, n_freq=2, n_wire_signals=2)
    b = layout.rhs()
    assert b.flags.f_contiguous
    assert b.sum() == layout.n_columns
    for i, row in enumerate(layout.lagrange_rows):
        assert b[row, i] == 1.0
    assert layout.wire_lagrange_row(1) == layout.noise_length + 1

    with pytest.raises(InvariantViolation):
        layout.check_bundle(np.zeros((layout.column_length + 1, layout.n_columns)))
    with pytest.raises(InvariantViolation):
        layout.channel_rows(2)
    with pytest.raises(InvariantViolation):
        layout.wire_lagrange_row(2)
