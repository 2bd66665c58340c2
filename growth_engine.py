"""
NeuroGrowth Growth Engine - Epoch-Level Structural Plasticity

At every epoch boundary each neuron's receptive-field radius is adjusted
from its firing rate and the synapse topology is rebuilt from the overlap of
the receptive-field circles.

Outgrowth (homeostasis)::

    max_rate  = target_rate / epsilon
    outgrowth = 1 - 2 / (1 + exp((epsilon - rate / max_rate) / beta))

    outgrowth == 0 at the target rate, > 0 below it, < 0 above it.

Radius update::

    radius <- max(radius + radius * rate_constant * outgrowth, min_radius)

Topology: a synapse i -> j exists iff the circles of i and j overlap
(``r_i + r_j > d_ij``, ``d_ij > 0``); its weight is the overlap area times
the source sign times ``weight_scale``.

Usage::

    engine = GrowthEngine(network, config)
    ...  # one epoch of fine steps
    engine.update_connections(epoch)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from growth_config import GrowthParams, GrowthSimConfig
from growth_foundation import InvariantError, Network

logger = logging.getLogger("neurogrowth.growth")


# ---------------------------------------------------------------------------
# Geometry and growth law
# ---------------------------------------------------------------------------

def distance_matrix(xloc: np.ndarray, yloc: np.ndarray) -> np.ndarray:
    """Pairwise Euclidean distances between grid positions."""
    return np.hypot(xloc[:, None] - xloc[None, :], yloc[:, None] - yloc[None, :])


def overlap_matrix(radii: np.ndarray, dist: np.ndarray) -> np.ndarray:
    """Intersection area of every pair of receptive-field circles.

    Pairs at distance 0 (self, coincident neurons) get area 0.  When one
    circle lies inside the other the area is that of the smaller circle;
    otherwise it is the standard two-segment lens area.
    """
    r = np.asarray(radii, dtype=np.float64)
    ri = np.broadcast_to(r[:, None], dist.shape)
    rj = np.broadcast_to(r[None, :], dist.shape)
    area = np.zeros(dist.shape, dtype=np.float64)

    mask = (dist > 0) & (ri + rj > dist)
    if not mask.any():
        return area

    r1, r2, d = ri[mask], rj[mask], dist[mask]
    small = np.minimum(r1, r2)
    contained = d + small <= np.maximum(r1, r2)
    vals = np.empty_like(d)
    vals[contained] = math.pi * small[contained] ** 2

    lens = ~contained
    a, b, dl = r1[lens], r2[lens], d[lens]
    ang_a = 2.0 * np.arccos(np.clip((a * a + dl * dl - b * b) / (2.0 * a * dl), -1.0, 1.0))
    ang_b = 2.0 * np.arccos(np.clip((b * b + dl * dl - a * a) / (2.0 * b * dl), -1.0, 1.0))
    vals[lens] = 0.5 * (a * a * (ang_a - np.sin(ang_a)) + b * b * (ang_b - np.sin(ang_b)))

    area[mask] = vals
    return area


def overlap_area(r1: float, r2: float, distance: float) -> float:
    """Intersection area of two circles (same arithmetic as ``overlap_matrix``)."""
    dist = np.array([[0.0, distance], [distance, 0.0]])
    return float(overlap_matrix(np.array([r1, r2]), dist)[0, 1])


def outgrowth(rates: np.ndarray, params: GrowthParams) -> np.ndarray:
    """Homeostatic outgrowth signal in (-1, 1) for each firing rate.

    A zero target rate yields 0 for silent neurons and -1 for active ones.
    """
    rates = np.asarray(rates, dtype=np.float64)
    if params.target_rate == 0:
        return np.where(rates > 0, -1.0, 0.0)
    with np.errstate(over="ignore"):
        return 1.0 - 2.0 / (1.0 + np.exp((params.epsilon - rates / params.max_rate) / params.beta))


# ---------------------------------------------------------------------------
# Growth state
# ---------------------------------------------------------------------------

@dataclass
class GrowthState:
    """Connection-growth state carried across epochs.

    Attributes:
        xloc, yloc: Neuron grid positions.
        dist: Static inter-neuron distance matrix.
        radii: Current receptive-field radius per neuron.
        rates: Firing rate per neuron in the last epoch (Hz).
        outgrowth: Outgrowth signal per neuron in the last epoch.
        delta_r: Radius change per neuron in the last epoch.
        area: Pairwise overlap areas after the last update.
        radii_history: Row 0 is the start radius, then one row per epoch.
        rates_history: Row 0 is all zeros, then one row per epoch.
        spike_counts_history: One row of spike counts per epoch.
        burstiness_hist: Network-wide spike count per burstiness bin.
        spikes_history: Network-wide spike count per spikes bin.
        epochs_completed: Number of growth updates applied so far.
    """

    xloc: np.ndarray
    yloc: np.ndarray
    dist: np.ndarray
    radii: np.ndarray
    rates: np.ndarray
    outgrowth: np.ndarray
    delta_r: np.ndarray
    area: np.ndarray
    radii_history: List[List[float]] = field(default_factory=list)
    rates_history: List[List[float]] = field(default_factory=list)
    spike_counts_history: List[List[int]] = field(default_factory=list)
    burstiness_hist: List[int] = field(default_factory=list)
    spikes_history: List[int] = field(default_factory=list)
    epochs_completed: int = 0

    @classmethod
    def initial(cls, network: Network, params: GrowthParams) -> "GrowthState":
        n = network.size
        ids = np.arange(n)
        xloc = (ids % network.width).astype(np.float64)
        yloc = (ids // network.width).astype(np.float64)
        radii = np.full(n, params.start_radius, dtype=np.float64)
        return cls(
            xloc=xloc,
            yloc=yloc,
            dist=distance_matrix(xloc, yloc),
            radii=radii,
            rates=np.zeros(n, dtype=np.float64),
            outgrowth=np.zeros(n, dtype=np.float64),
            delta_r=np.zeros(n, dtype=np.float64),
            area=np.zeros((n, n), dtype=np.float64),
            radii_history=[radii.tolist()],
            rates_history=[[0.0] * n],
        )


@dataclass
class GrowthUpdate:
    """Summary of one growth update."""

    epoch: int = 0
    created: int = 0
    removed: int = 0
    updated: int = 0
    skipped_by_cap: int = 0
    total_synapses: int = 0
    mean_radius: float = 0.0
    mean_rate: float = 0.0


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class GrowthEngine:
    """Recomputes rates, radii, overlaps and synapses at epoch boundaries.

    Args:
        network: The network whose topology is rebuilt.
        config: Run configuration.
        state: Growth state to continue from (fresh if omitted).
    """

    def __init__(
        self,
        network: Network,
        config: GrowthSimConfig,
        state: Optional[GrowthState] = None,
    ):
        self.network = network
        self.config = config
        self.params = config.growth
        self.state = state or GrowthState.initial(network, config.growth)

    def update_connections(self, epoch: int) -> GrowthUpdate:
        """Apply the growth update that closes ``epoch`` (1-based).

        Reads the spike counts accumulated by the network during the epoch;
        the caller resets them afterwards.

        Raises:
            InvariantError: if epochs are applied out of order.
        """
        st = self.state
        if epoch != st.epochs_completed + 1:
            raise InvariantError(
                f"Growth update for epoch {epoch} after {st.epochs_completed} completed epochs"
            )
        counts = self.network.spike_counts()

        # 1-2. Firing rate and outgrowth
        st.rates = counts.astype(np.float64) / self.config.simulation.epoch_duration
        st.outgrowth = outgrowth(st.rates, self.params)
        ceiling = self.config.simulation.max_firing_rate
        over = np.flatnonzero(st.rates > ceiling)
        if over.size:
            logger.warning(
                "Epoch %d: %d neurons fired above max_firing_rate %.1f Hz (peak %.1f Hz, neuron %d)",
                epoch, over.size, ceiling, float(st.rates.max()), int(np.argmax(st.rates)),
            )

        # 3. Radius update, clamped at the minimum
        st.delta_r = st.radii * self.params.rate_constant * st.outgrowth
        st.radii = np.maximum(st.radii + st.delta_r, self.params.min_radius)

        # 4-5. Overlap and topology
        st.area = overlap_matrix(st.radii, st.dist)
        update = self._rebuild_synapses(st.area)
        update.epoch = epoch

        # 6. Histories
        st.radii_history.append(st.radii.tolist())
        st.rates_history.append(st.rates.tolist())
        st.spike_counts_history.append([int(c) for c in counts])
        self._bin_spikes()
        st.epochs_completed = epoch

        update.total_synapses = len(self.network.synapses)
        update.mean_radius = float(np.mean(st.radii))
        update.mean_rate = float(np.mean(st.rates))
        logger.debug(
            "Epoch %d growth: +%d -%d ~%d synapses (%d capped), mean radius %.4f",
            epoch, update.created, update.removed, update.updated,
            update.skipped_by_cap, update.mean_radius,
        )
        return update

    def _rebuild_synapses(self, area: np.ndarray) -> GrowthUpdate:
        """Remove vanished synapses, reweight survivors, create new ones."""
        net = self.network
        model = net.model
        scale = self.config.synapses.weight_scale
        cap = self.config.simulation.max_synapses_per_neuron
        update = GrowthUpdate()

        def weight_for(source: int, dest: int) -> float:
            syn_type = model.synapse_type(
                net.neurons[source].neuron_type, net.neurons[dest].neuron_type
            )
            return float(area[source, dest]) * model.synapse_sign(syn_type) * scale

        for source, dest in list(net.synapses):
            if area[source, dest] <= 0:
                net.remove_synapse(source, dest)
                update.removed += 1

        for syn in net.iter_synapses():
            syn.weight = weight_for(syn.source, syn.dest)
            update.updated += 1

        # destination-major, source-minor so the cap is applied deterministically
        for dest, source in np.argwhere(area.T > 0):
            dest, source = int(dest), int(source)
            if net.has_synapse(source, dest):
                continue
            if net.incoming_count(dest) >= cap or net.outgoing_count(source) >= cap:
                update.skipped_by_cap += 1
                continue
            net.create_synapse(source, dest, weight_for(source, dest))
            update.created += 1
        return update

    def _bin_spikes(self) -> None:
        """Add this epoch's spikes to the burstiness and spikes histograms."""
        st = self.state
        dt = self.config.simulation.delta_t
        step = self.network.context.step
        for hist, width in (
            (st.burstiness_hist, self.params.burstiness_bin),
            (st.spikes_history, self.params.spikes_bin),
        ):
            steps_per_bin = max(1, int(round(width / dt)))
            needed = -(-step // steps_per_bin)
            if len(hist) < needed:
                hist.extend([0] * (needed - len(hist)))
            for steps in self.network.spike_steps():
                for s in steps:
                    hist[s // steps_per_bin] += 1
