"""Tests for the fine-step network: LIF integration, refractory handling,
phase ordering, synaptic delivery and the neuron type layout.
"""

import sys
import os
import math

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from growth_config import load_growth_config
from growth_foundation import (
    InvariantError,
    LIFModel,
    Network,
    NeuronType,
    SimulationContext,
    SynapseType,
)


def _quiet_config(width=2, height=2, **layout):
    """Noise-free, undriven neurons resting at 0 V on a fixed layout."""
    return load_growth_config({
        "simulation": {"width": width, "height": height, "epoch_duration": 0.1},
        "neurons": {
            "i_inject": [0.0, 0.0],
            "i_noise": [0.0, 0.0],
            "v_init": [0.0, 0.0],
            "v_reset": [0.0, 0.0],
            "v_resting": [0.0, 0.0],
        },
        "layout": {"fixed_layout": True, **layout},
    })


def _network(config):
    net = Network(config)
    net.setup()
    return net


def _drive(net, neuron_id, current):
    neuron = net.neurons[neuron_id]
    neuron.i_inject = current
    net.model.derive_coefficients(neuron, net.config.simulation.delta_t)
    return neuron


def _closed_form(neuron, steps):
    """Expected membrane trace and spike steps of an isolated driven neuron."""
    v_inf = neuron.c1 * neuron.i0 / (1.0 - neuron.c2)
    origin = neuron.v_init
    v = origin
    k = 0
    refractory = 0
    trace, spikes = [], []
    for step in range(steps):
        if refractory == 0 and v >= neuron.v_thresh:
            spikes.append(step)
            origin = neuron.v_reset
            v = origin
            k = 0
            refractory = neuron.refractory_steps
        elif refractory > 0:
            refractory -= 1
            v = neuron.v_reset
        else:
            k += 1
            v = v_inf + (origin - v_inf) * neuron.c2 ** k
        trace.append(v)
    return trace, spikes


class TestMembraneIntegration:
    """An isolated neuron under constant current follows the exact solution."""

    def test_matches_closed_form(self):
        net = _network(_quiet_config())
        neuron = _drive(net, 0, 20e-9)
        expected, expected_spikes = _closed_form(neuron, 1000)

        spikes = []
        for step in range(1000):
            result = net.advance()
            assert result.step == step
            if 0 in result.fired:
                spikes.append(result.step)
            assert neuron.vm == pytest.approx(expected[step], rel=1e-9, abs=1e-15)

        assert spikes == expected_spikes
        assert len(spikes) >= 2

    def test_first_spike_time(self):
        net = _network(_quiet_config())
        neuron = _drive(net, 0, 20e-9)
        v_inf = neuron.c1 * neuron.i0 / (1.0 - neuron.c2)
        crossing = math.ceil(
            math.log((v_inf - neuron.v_thresh) / (v_inf - neuron.v_init)) / math.log(neuron.c2)
        )
        fired = [r.step for r in net.advance_n(600) if 0 in r.fired]
        assert fired[0] == crossing

    def test_coefficients(self):
        net = _network(_quiet_config())
        neuron = net.neurons[0]
        tau = neuron.c_m * neuron.r_m
        assert neuron.c2 == pytest.approx(math.exp(-1e-4 / tau))
        assert neuron.c1 == pytest.approx(neuron.r_m * (1 - neuron.c2))
        assert neuron.refractory_steps == 30

    def test_undriven_neuron_stays_at_rest(self):
        net = _network(_quiet_config())
        net.advance_n(200)
        for neuron in net.neurons:
            assert neuron.vm == 0.0
            assert neuron.spike_count == 0


class TestRefractory:
    def _fire_once(self, net):
        for _ in range(1000):
            result = net.advance()
            if 0 in result.fired:
                return result.step
        raise AssertionError("neuron 0 never fired")

    def test_held_at_reset_for_refractory_period(self):
        net = _network(_quiet_config())
        neuron = _drive(net, 0, 20e-9)
        self._fire_once(net)
        assert neuron.refractory_remaining == neuron.refractory_steps
        assert neuron.vm == neuron.v_reset

        for j in range(1, neuron.refractory_steps + 1):
            net.advance()
            assert neuron.refractory_remaining == neuron.refractory_steps - j
            assert neuron.vm == neuron.v_reset

        net.advance()
        assert neuron.vm > neuron.v_reset

    def test_cannot_fire_while_refractory(self):
        net = _network(_quiet_config())
        neuron = _drive(net, 0, 20e-9)
        self._fire_once(net)
        neuron.vm = 1.0
        result = net.advance()
        assert 0 not in result.fired
        assert neuron.vm == neuron.v_reset
        assert neuron.spike_count == 1

    def test_spike_recorded(self):
        net = _network(_quiet_config())
        _drive(net, 0, 20e-9)
        step = self._fire_once(net)
        assert net.neurons[0].spike_count == 1
        assert net.neurons[0].spike_steps == [step]
        assert net.spike_counts().tolist() == [1, 0, 0, 0]

    def test_reset_spike_counts(self):
        net = _network(_quiet_config())
        _drive(net, 0, 20e-9)
        self._fire_once(net)
        net.reset_spike_counts()
        assert net.spike_counts().sum() == 0
        assert net.spike_steps() == [[], [], [], []]


class TestNoise:
    def test_noise_stream_independent_of_firing(self):
        cfg = load_growth_config({
            "simulation": {"width": 2, "height": 2, "epoch_duration": 0.1},
            "neurons": {"i_inject": [0.0, 0.0], "i_noise": [1e-9, 1e-9]},
            "layout": {"fixed_layout": True},
        })
        a = _network(cfg)
        b = _network(cfg)
        b.neurons[0].vm = 1.0  # forces a spike and a refractory period in b only

        a.advance_n(20)
        b.advance_n(20)
        for nid in (1, 2, 3):
            assert a.neurons[nid].vm == b.neurons[nid].vm
        assert a.neurons[0].vm != b.neurons[0].vm

    def test_same_seed_same_trajectory(self):
        cfg = load_growth_config({"simulation": {"width": 3, "height": 3, "epoch_duration": 0.1}})
        a = _network(cfg)
        b = _network(cfg)
        for _ in range(300):
            assert a.advance().fired == b.advance().fired
        assert [n.vm for n in a.neurons] == [n.vm for n in b.neurons]


class TestSynapticDelivery:
    def test_delivery_time_and_amplitude(self):
        net = _network(_quiet_config(width=2, height=1))
        w = 5e-9
        syn = net.create_synapse(0, 1, w)
        assert syn.synapse_type is SynapseType.EE
        assert syn.delay_ticks == 16
        target = net.neurons[1]

        net.neurons[0].vm = 1.0
        assert net.advance().fired == [0]
        for _ in range(syn.delay_ticks - 2):
            net.advance()
            assert target.vm == 0.0

        net.advance()  # delivery tick: the PSR reaches the bin in this step
        first = target.c1 * (w / syn.decay)
        assert target.vm == pytest.approx(first, rel=1e-12)

        net.advance()
        assert target.vm == pytest.approx(target.c1 * w + target.c2 * first, rel=1e-12)

    def test_bins_sum_and_clear(self):
        net = _network(_quiet_config(width=3, height=1))
        w1, w2 = 2e-9, 3e-9
        s1 = net.create_synapse(0, 2, w1)
        s2 = net.create_synapse(1, 2, w2)
        net.neurons[0].vm = 1.0
        net.neurons[1].vm = 1.0

        net.advance_n(s1.delay_ticks)
        assert s1.decay == s2.decay
        expected = net.neurons[2].c1 * (w1 + w2) / s1.decay
        assert net.neurons[2].vm == pytest.approx(expected, rel=1e-12)
        assert not net.summation.any()

    def test_psr_decays(self):
        net = _network(_quiet_config(width=2, height=1))
        syn = net.create_synapse(0, 1, 5e-9)
        net.neurons[0].vm = 1.0
        net.advance_n(syn.delay_ticks)
        before = syn.psr
        net.advance()
        assert syn.psr == pytest.approx(before * syn.decay)

    def test_inhibitory_synapse(self):
        net = _network(_quiet_config(width=2, height=1, inhibitory_neurons=[0]))
        syn = net.create_synapse(0, 1, -5e-9)
        assert syn.synapse_type is SynapseType.IE
        assert syn.delay_ticks == 9
        net.neurons[0].vm = 1.0
        net.advance_n(syn.delay_ticks)
        assert net.neurons[1].vm < 0.0


class TestTopology:
    def test_wrong_sign_rejected(self):
        net = _network(_quiet_config(width=2, height=1, inhibitory_neurons=[0]))
        with pytest.raises(InvariantError):
            net.create_synapse(0, 1, 1e-9)
        with pytest.raises(InvariantError):
            net.create_synapse(1, 0, -1e-9)

    def test_self_connection_rejected(self):
        net = _network(_quiet_config())
        with pytest.raises(InvariantError):
            net.create_synapse(2, 2, 1e-9)

    def test_unknown_bin_rejected(self):
        net = _network(_quiet_config())
        with pytest.raises(InvariantError):
            net.create_synapse(0, 4, 1e-9)

    def test_duplicate_rejected(self):
        net = _network(_quiet_config())
        net.create_synapse(0, 1, 1e-9)
        with pytest.raises(ValueError):
            net.create_synapse(0, 1, 1e-9)

    def test_cap_enforced(self):
        cfg = _quiet_config(width=3, height=1)
        cfg.simulation.max_synapses_per_neuron = 1
        net = _network(cfg)
        net.create_synapse(0, 2, 1e-9)
        with pytest.raises(InvariantError):
            net.create_synapse(1, 2, 1e-9)
        with pytest.raises(InvariantError):
            net.create_synapse(0, 1, 1e-9)

    def test_remove_synapse(self):
        net = _network(_quiet_config())
        net.create_synapse(0, 1, 1e-9)
        net.remove_synapse(0, 1)
        assert not net.has_synapse(0, 1)
        assert net.incoming_count(1) == 0
        assert net.outgoing_count(0) == 0
        with pytest.raises(KeyError):
            net.remove_synapse(0, 1)

    def test_check_invariants_detects_bad_sign(self):
        net = _network(_quiet_config())
        syn = net.create_synapse(0, 1, 1e-9)
        net.check_invariants()
        syn.weight = -1e-9
        with pytest.raises(InvariantError):
            net.check_invariants()

    def test_telemetry(self):
        net = _network(_quiet_config(inhibitory_neurons=[3]))
        net.create_synapse(0, 1, 2e-9)
        net.create_synapse(3, 1, -4e-9)
        t = net.telemetry()
        assert t.total_neurons == 4
        assert t.total_synapses == 2
        assert t.excitatory_synapses == 1
        assert t.inhibitory_synapses == 1
        assert t.mean_abs_weight == pytest.approx(3e-9)


class TestLayout:
    def test_fixed_layout(self):
        net = _network(_quiet_config(width=3, height=3, starter_neurons=[4], inhibitory_neurons=[0, 8]))
        types = [n.neuron_type for n in net.neurons]
        assert types[4] is NeuronType.STARTER
        assert types[0] is NeuronType.INHIBITORY
        assert types[8] is NeuronType.INHIBITORY
        assert types.count(NeuronType.EXCITATORY) == 6

    def test_random_layout_fractions(self):
        net = _network(load_growth_config())
        types = [n.neuron_type for n in net.neurons]
        assert types.count(NeuronType.INHIBITORY) == 2
        assert types.count(NeuronType.STARTER) == 10

    def test_starter_parameters(self):
        net = _network(load_growth_config())
        for neuron in net.neurons:
            if neuron.neuron_type is NeuronType.STARTER:
                assert 13.565e-3 <= neuron.v_thresh <= 13.655e-3
                assert neuron.v_reset == 13.0e-3
            else:
                assert neuron.v_thresh == 15.0e-3
                assert neuron.v_reset == 13.5e-3

    def test_layout_reproducible(self):
        a = _network(load_growth_config())
        b = _network(load_growth_config())
        assert [n.neuron_type for n in a.neurons] == [n.neuron_type for n in b.neurons]

    def test_positions_row_major(self):
        net = _network(_quiet_config(width=3, height=2))
        assert net.position(0) == (0, 0)
        assert net.position(2) == (2, 0)
        assert net.position(4) == (1, 1)


class TestSimulationContext:
    def test_rng_state_round_trip(self):
        ctx = SimulationContext(seed=7)
        ctx.rng.standard_normal(5)
        saved = ctx.rng_state()
        expected = ctx.rng.standard_normal(5)

        other = SimulationContext(seed=99)
        other.set_rng_state(saved)
        np.testing.assert_array_equal(other.rng.standard_normal(5), expected)

    def test_rng_state_is_plain_data(self):
        state = SimulationContext(seed=3).rng_state()
        assert all(isinstance(v, str) for v in state["state"].values())

    def test_default_model(self):
        net = Network(_quiet_config())
        assert isinstance(net.model, LIFModel)
