"""
NeuroGrowth Foundation - Fine-Step Dynamics Engine

Implements the per-step layer of the growth simulator: a 2-D grid of
leaky-integrate-and-fire neurons connected by delayed, decaying synapses
that write into one summation bin per neuron.

Design principles:
    - Contiguous, id-indexed storage: neurons live in a list indexed by grid
      id, synapses are keyed by (source id, destination id), a synapse names
      its destination bin by index only
    - Pluggable neuron model: the dynamics are a swappable strategy object
      (``NeuronModel``); ``LIFModel`` is the reference variant
    - Explicit context: the step counter and the random generator live in a
      ``SimulationContext`` that is passed in, never in module globals
    - Persistence-native: every dynamic field round-trips exactly

Step phases (in order, with a barrier between them):
    1. Spike collection: non-refractory neurons at or above threshold fire
       and enqueue a delivery on each outgoing synapse
    2. Delivery: every synapse ticks its delay queue and adds its PSR to the
       destination summation bin
    3. Integration: every neuron reads its bin and advances its membrane;
       bins are cleared
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
)

import numpy as np

from delay_queue import DELAY_QUEUE_LENGTH, DelayQueue, delay_to_ticks
from growth_config import GrowthSimConfig

logger = logging.getLogger("neurogrowth.network")


class InvariantError(RuntimeError):
    """A structural invariant broke during a fine step or growth update.

    There is no recovery path; the run must stop.
    """


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class NeuronType(Enum):
    """Neuron class, fixed at setup."""
    EXCITATORY = auto()
    INHIBITORY = auto()
    STARTER = auto()  # endogenously active; excitatory for synapse purposes

    @property
    def is_inhibitory(self) -> bool:
        return self is NeuronType.INHIBITORY


class SynapseType(Enum):
    """Synapse class: source class followed by destination class."""
    EE = auto()
    EI = auto()
    IE = auto()
    II = auto()

    @property
    def source_inhibitory(self) -> bool:
        return self in (SynapseType.IE, SynapseType.II)


# ---------------------------------------------------------------------------
# Core Data Structures
# ---------------------------------------------------------------------------

@dataclass
class Neuron:
    """One grid point of the network.

    Attributes:
        neuron_id: Row-major grid index.
        neuron_type: EXCITATORY, INHIBITORY or STARTER.
        vm: Membrane potential (V).
        v_thresh: Firing threshold (V).
        v_resting: Resting potential (V).
        v_reset: Potential after a spike, held while refractory (V).
        v_init: Potential at setup (V).
        i_inject: Constant background current (A).
        i_noise: Scale of the per-step Gaussian noise current (A).
        c_m: Membrane capacitance (F).
        r_m: Membrane resistance (Ohm).
        t_refract: Absolute refractory period (s).
        refractory_steps: Refractory period in fine steps.
        refractory_remaining: Fine steps left before integration resumes.
        spike_count: Spikes emitted in the current epoch.
        spike_steps: Global step of every spike in the current epoch.
        c1, c2, i0: Exponential-Euler coefficients derived at setup.
    """

    neuron_id: int = 0
    neuron_type: NeuronType = NeuronType.EXCITATORY
    vm: float = 0.0
    v_thresh: float = 15e-3
    v_resting: float = 0.0
    v_reset: float = 13.5e-3
    v_init: float = 13e-3
    i_inject: float = 0.0
    i_noise: float = 0.0
    c_m: float = 3e-8
    r_m: float = 1e6
    t_refract: float = 3e-3
    refractory_steps: int = 0
    refractory_remaining: int = 0
    spike_count: int = 0
    spike_steps: List[int] = field(default_factory=list)
    c1: float = 0.0
    c2: float = 0.0
    i0: float = 0.0


@dataclass
class Synapse:
    """Directed connection from a neuron to a summation bin.

    Attributes:
        source: Presynaptic neuron id.
        dest: Destination summation-bin (and neuron) id.
        synapse_type: EE, EI, IE or II.
        weight: Signed strength; the sign follows the source neuron class.
        psr: Post-synaptic response, added to the bin every step.
        tau: PSR time constant (s).
        decay: Per-step PSR decay factor, ``exp(-delta_t / tau)``.
        delay_ticks: Transmission delay in fine steps.
        delay_queue: Pending deliveries.
    """

    source: int = 0
    dest: int = 0
    synapse_type: SynapseType = SynapseType.EE
    weight: float = 0.0
    psr: float = 0.0
    tau: float = 3e-3
    decay: float = 0.0
    delay_ticks: int = 1
    delay_queue: DelayQueue = field(default_factory=DelayQueue)


@dataclass
class StepResult:
    """Result returned from Network.advance().

    Attributes:
        step: Global step index this result corresponds to.
        fired: Ids of the neurons that spiked in this step.
    """

    step: int = 0
    fired: List[int] = field(default_factory=list)


@dataclass
class Telemetry:
    """Network statistics snapshot."""

    step: int = 0
    total_neurons: int = 0
    total_synapses: int = 0
    epoch_spikes: int = 0
    mean_abs_weight: float = 0.0
    excitatory_synapses: int = 0
    inhibitory_synapses: int = 0


# ---------------------------------------------------------------------------
# Simulation context
# ---------------------------------------------------------------------------

class SimulationContext:
    """Run-wide mutable state: the global step counter and the RNG.

    Created at run start and passed to every component that needs the step
    count or draws randomness.  Checkpointed with the rest of the state.

    Args:
        seed: Seed for the PCG64 generator.
    """

    def __init__(self, seed: int = 1):
        self.seed = seed
        self.step: int = 0
        self.rng = np.random.Generator(np.random.PCG64(seed))

    def __repr__(self) -> str:
        return f"SimulationContext(seed={self.seed}, step={self.step})"

    def rng_state(self) -> Dict[str, Any]:
        """RNG state with its 128-bit integers stored as decimal strings."""
        st = self.rng.bit_generator.state
        return {
            "bit_generator": st["bit_generator"],
            "state": {k: str(v) for k, v in st["state"].items()},
            "has_uint32": int(st["has_uint32"]),
            "uinteger": int(st["uinteger"]),
        }

    def set_rng_state(self, data: Dict[str, Any]) -> None:
        self.rng.bit_generator.state = {
            "bit_generator": data["bit_generator"],
            "state": {k: int(v) for k, v in data["state"].items()},
            "has_uint32": int(data["has_uint32"]),
            "uinteger": int(data["uinteger"]),
        }


# ---------------------------------------------------------------------------
# Neuron models (pluggable strategy objects)
# ---------------------------------------------------------------------------

class NeuronModel:
    """Base class for neuron/synapse dynamics.

    Subclass and override every method to add a model variant; the
    ``Network`` only ever talks to its model through this interface.
    """

    def init_neuron(
        self,
        neuron: Neuron,
        config: GrowthSimConfig,
        rng: np.random.Generator,
    ) -> None:
        raise NotImplementedError

    def update_neuron(self, neuron: Neuron, synaptic_input: float, noise: float) -> None:
        raise NotImplementedError

    def fire(self, neuron: Neuron, step: int) -> None:
        raise NotImplementedError

    def synapse_type(self, source: NeuronType, dest: NeuronType) -> SynapseType:
        raise NotImplementedError

    def synapse_sign(self, synapse_type: SynapseType) -> int:
        raise NotImplementedError

    def init_synapse(self, synapse: Synapse, config: GrowthSimConfig) -> None:
        raise NotImplementedError

    def pre_spike_hit(self, synapse: Synapse) -> None:
        raise NotImplementedError

    def advance_synapse(self, synapse: Synapse) -> float:
        raise NotImplementedError


class LIFModel(NeuronModel):
    """Leaky integrate-and-fire neurons with exponentially decaying PSRs.

    Membrane equation::

        tau_m dVm/dt = -(Vm - V_resting) + R_m (I_syn + I_inject + I_noise)

    integrated with the exponential Euler method, which is exact for input
    held constant over a step::

        Vm <- C1 (I_syn + I0 + noise * I_noise) + C2 Vm
        C1 = R_m (1 - exp(-dt / tau_m)),  C2 = exp(-dt / tau_m),
        I0 = I_inject + V_resting / R_m

    On delivery a synapse adds ``W / decay`` to its PSR; every step it adds
    the PSR to its destination bin and decays it by ``decay``.
    """

    def init_neuron(
        self,
        neuron: Neuron,
        config: GrowthSimConfig,
        rng: np.random.Generator,
    ) -> None:
        """Draw per-neuron parameters and derive integration coefficients."""
        p = config.neurons
        dt = config.simulation.delta_t
        starter = neuron.neuron_type is NeuronType.STARTER

        def draw(bounds: Tuple[float, float]) -> float:
            return float(rng.uniform(bounds[0], bounds[1]))

        neuron.i_inject = draw(p.i_inject)
        neuron.i_noise = draw(p.i_noise)
        neuron.v_thresh = draw(p.starter_v_thresh if starter else p.v_thresh)
        neuron.v_resting = draw(p.v_resting)
        neuron.v_reset = draw(p.starter_v_reset if starter else p.v_reset)
        neuron.v_init = draw(p.v_init)
        neuron.c_m = p.c_m
        neuron.r_m = p.r_m
        neuron.t_refract = p.t_refract

        neuron.vm = neuron.v_init
        neuron.refractory_remaining = 0
        neuron.spike_count = 0
        neuron.spike_steps = []
        self.derive_coefficients(neuron, dt)

    def derive_coefficients(self, neuron: Neuron, delta_t: float) -> None:
        tau = neuron.c_m * neuron.r_m
        neuron.c2 = math.exp(-delta_t / tau)
        neuron.c1 = neuron.r_m * (1.0 - neuron.c2)
        neuron.i0 = neuron.i_inject + neuron.v_resting / neuron.r_m
        neuron.refractory_steps = int(neuron.t_refract / delta_t + 0.5)

    def update_neuron(self, neuron: Neuron, synaptic_input: float, noise: float) -> None:
        neuron.vm = (
            neuron.c1 * (synaptic_input + neuron.i0 + noise * neuron.i_noise)
            + neuron.c2 * neuron.vm
        )

    def fire(self, neuron: Neuron, step: int) -> None:
        neuron.spike_count += 1
        neuron.spike_steps.append(step)
        neuron.vm = neuron.v_reset
        neuron.refractory_remaining = neuron.refractory_steps

    def synapse_type(self, source: NeuronType, dest: NeuronType) -> SynapseType:
        if source.is_inhibitory:
            return SynapseType.II if dest.is_inhibitory else SynapseType.IE
        return SynapseType.EI if dest.is_inhibitory else SynapseType.EE

    def synapse_sign(self, synapse_type: SynapseType) -> int:
        return -1 if synapse_type.source_inhibitory else 1

    def init_synapse(self, synapse: Synapse, config: GrowthSimConfig) -> None:
        """Reset PSR and delay queue; set per-type delay and decay."""
        dt = config.simulation.delta_t
        name = synapse.synapse_type.name
        synapse.tau = config.synapses.tau[name]
        synapse.decay = math.exp(-dt / synapse.tau)
        synapse.delay_ticks = delay_to_ticks(config.synapses.delay[name], dt)
        synapse.psr = 0.0
        synapse.delay_queue = DelayQueue(DELAY_QUEUE_LENGTH)

    def pre_spike_hit(self, synapse: Synapse) -> None:
        synapse.delay_queue.enqueue(synapse.delay_ticks)

    def advance_synapse(self, synapse: Synapse) -> float:
        """Tick the delay queue; return this step's contribution to the bin."""
        if synapse.delay_queue.tick():
            synapse.psr += synapse.weight / synapse.decay
        out = synapse.psr
        synapse.psr *= synapse.decay
        return out


# ---------------------------------------------------------------------------
# Network container
# ---------------------------------------------------------------------------

class Network:
    """Owns neurons, synapses and summation bins; runs the fine step.

    Args:
        config: Validated run configuration.
        context: Shared step counter and RNG (a fresh one seeded from the
            configuration if omitted).
        model: Neuron model strategy (``LIFModel`` if omitted).
    """

    def __init__(
        self,
        config: GrowthSimConfig,
        context: Optional[SimulationContext] = None,
        model: Optional[NeuronModel] = None,
    ):
        self.config = config
        self.context = context or SimulationContext(config.simulation.seed)
        self.model = model or LIFModel()

        n = config.simulation.total_neurons
        self.width = config.simulation.width
        self.height = config.simulation.height

        # --- Contiguous, id-indexed storage ---
        self.neurons: List[Neuron] = []
        self.synapses: Dict[Tuple[int, int], Synapse] = {}
        self.summation = np.zeros(n, dtype=np.float64)

        # --- Adjacency indices: neuron id -> peer ids ---
        self._outgoing: List[Set[int]] = [set() for _ in range(n)]
        self._incoming: List[Set[int]] = [set() for _ in range(n)]

    # -----------------------------------------------------------------------
    # Setup
    # -----------------------------------------------------------------------

    @property
    def size(self) -> int:
        return self.config.simulation.total_neurons

    def setup(self) -> None:
        """Assign neuron types and draw neuron parameters from the context RNG."""
        types = self._generate_type_map()
        rng = self.context.rng
        self.neurons = []
        for nid, ntype in enumerate(types):
            neuron = Neuron(neuron_id=nid, neuron_type=ntype)
            self.model.init_neuron(neuron, self.config, rng)
            self.neurons.append(neuron)
        self.synapses.clear()
        for peers in self._outgoing + self._incoming:
            peers.clear()
        self.summation.fill(0.0)
        logger.info(
            "Network set up: %dx%d grid, %d inhibitory, %d starter neurons",
            self.width,
            self.height,
            sum(1 for t in types if t is NeuronType.INHIBITORY),
            sum(1 for t in types if t is NeuronType.STARTER),
        )

    def _generate_type_map(self) -> List[NeuronType]:
        layout = self.config.layout
        n = self.size
        types = [NeuronType.EXCITATORY] * n

        if layout.fixed_layout:
            for nid in layout.inhibitory_neurons:
                types[nid] = NeuronType.INHIBITORY
            for nid in layout.starter_neurons:
                types[nid] = NeuronType.STARTER
            return types

        rng = self.context.rng
        num_excitatory = int(layout.frac_excitatory * n)
        num_inhibitory = n - num_excitatory
        order = rng.permutation(n)
        for nid in order[:num_inhibitory]:
            types[int(nid)] = NeuronType.INHIBITORY

        excitatory = [nid for nid in range(n) if types[nid] is NeuronType.EXCITATORY]
        num_starter = min(int(layout.frac_starter * n), len(excitatory))
        if num_starter:
            chosen = rng.permutation(len(excitatory))[:num_starter]
            for idx in chosen:
                types[excitatory[int(idx)]] = NeuronType.STARTER
        return types

    def position(self, neuron_id: int) -> Tuple[int, int]:
        """Grid (x, y) of a neuron; ids are row-major."""
        return neuron_id % self.width, neuron_id // self.width

    # -----------------------------------------------------------------------
    # Topology management
    # -----------------------------------------------------------------------

    def create_synapse(self, source: int, dest: int, weight: float) -> Synapse:
        """Create a synapse from ``source`` into bin ``dest``.

        Raises:
            InvariantError: on unknown endpoints, self-connection, a weight
                whose sign contradicts the source type, or a full cap.
            ValueError: if the synapse already exists.
        """
        n = self.size
        if not (0 <= source < n and 0 <= dest < n):
            raise InvariantError(f"Synapse {source}->{dest} references a non-existent bin")
        if source == dest:
            raise InvariantError(f"Self-connection on neuron {source}")
        if (source, dest) in self.synapses:
            raise ValueError(f"Synapse {source}->{dest} already exists")
        cap = self.config.simulation.max_synapses_per_neuron
        if len(self._incoming[dest]) >= cap or len(self._outgoing[source]) >= cap:
            raise InvariantError(f"Synapse {source}->{dest} would exceed the cap of {cap}")

        syn_type = self.model.synapse_type(
            self.neurons[source].neuron_type, self.neurons[dest].neuron_type
        )
        if weight * self.model.synapse_sign(syn_type) < 0:
            raise InvariantError(
                f"Weight {weight} has the wrong sign for {syn_type.name} synapse {source}->{dest}"
            )
        syn = Synapse(source=source, dest=dest, synapse_type=syn_type, weight=weight)
        self.model.init_synapse(syn, self.config)
        self.attach_synapse(syn)
        return syn

    def attach_synapse(self, syn: Synapse) -> None:
        """Register an already-initialised synapse (used when restoring)."""
        self.synapses[(syn.source, syn.dest)] = syn
        self._outgoing[syn.source].add(syn.dest)
        self._incoming[syn.dest].add(syn.source)

    def remove_synapse(self, source: int, dest: int) -> None:
        syn = self.synapses.pop((source, dest), None)
        if syn is None:
            raise KeyError(f"Synapse {source}->{dest} not found")
        self._outgoing[source].discard(dest)
        self._incoming[dest].discard(source)

    def clear_synapses(self) -> None:
        self.synapses.clear()
        for peers in self._outgoing + self._incoming:
            peers.clear()

    def get_synapse(self, source: int, dest: int) -> Optional[Synapse]:
        return self.synapses.get((source, dest))

    def has_synapse(self, source: int, dest: int) -> bool:
        return (source, dest) in self.synapses

    def incoming_count(self, neuron_id: int) -> int:
        return len(self._incoming[neuron_id])

    def outgoing_count(self, neuron_id: int) -> int:
        return len(self._outgoing[neuron_id])

    def iter_synapses(self) -> Iterator[Synapse]:
        return iter(self.synapses.values())

    # -----------------------------------------------------------------------
    # Simulation loop
    # -----------------------------------------------------------------------

    def advance(self) -> StepResult:
        """Advance one fine step and increment the global step counter.

        Returns:
            StepResult with the step index and the neurons that fired.
        """
        ctx = self.context
        model = self.model
        result = StepResult(step=ctx.step)

        # 1. Spike collection
        fired: List[int] = []
        for neuron in self.neurons:
            if neuron.refractory_remaining > 0:
                continue
            if neuron.vm >= neuron.v_thresh:
                model.fire(neuron, ctx.step)
                fired.append(neuron.neuron_id)
                for dest in self._outgoing[neuron.neuron_id]:
                    model.pre_spike_hit(self.synapses[(neuron.neuron_id, dest)])
        result.fired = fired

        # 2. Delivery into summation bins
        bins = self.summation
        for syn in self.synapses.values():
            bins[syn.dest] += model.advance_synapse(syn)

        # 3. Integration
        #    Neurons that fired this step start their refractory count on the
        #    NEXT step.  Noise is drawn for every neuron, integrating or not.
        noise = ctx.rng.standard_normal(len(self.neurons)).tolist()
        inputs = bins.tolist()
        fired_set = set(fired)
        for neuron in self.neurons:
            nid = neuron.neuron_id
            if nid in fired_set:
                continue
            if neuron.refractory_remaining > 0:
                neuron.refractory_remaining -= 1
                neuron.vm = neuron.v_reset
                continue
            model.update_neuron(neuron, inputs[nid], noise[nid])
        bins.fill(0.0)

        ctx.step += 1
        return result

    def advance_n(self, n: int) -> List[StepResult]:
        """Run n fine steps; returns all StepResults."""
        return [self.advance() for _ in range(n)]

    # -----------------------------------------------------------------------
    # Epoch bookkeeping
    # -----------------------------------------------------------------------

    def spike_counts(self) -> np.ndarray:
        return np.array([n.spike_count for n in self.neurons], dtype=np.int64)

    def spike_steps(self) -> List[List[int]]:
        return [list(n.spike_steps) for n in self.neurons]

    def reset_spike_counts(self) -> None:
        for neuron in self.neurons:
            neuron.spike_count = 0
            neuron.spike_steps = []

    # -----------------------------------------------------------------------
    # Invariants and queries
    # -----------------------------------------------------------------------

    def check_invariants(self) -> None:
        """Verify the structural invariants of the network.

        Raises:
            InvariantError: on the first violation found.
        """
        n = self.size
        if len(self.neurons) != n:
            raise InvariantError(f"Expected {n} neurons, found {len(self.neurons)}")
        for nid, neuron in enumerate(self.neurons):
            if neuron.neuron_id != nid:
                raise InvariantError(f"Neuron at index {nid} carries id {neuron.neuron_id}")
            if not isinstance(neuron.neuron_type, NeuronType):
                raise InvariantError(f"Neuron {nid} has no valid type")

        cap = self.config.simulation.max_synapses_per_neuron
        for (source, dest), syn in self.synapses.items():
            if not (0 <= dest < n and 0 <= source < n):
                raise InvariantError(f"Synapse {source}->{dest} references a non-existent bin")
            if (syn.source, syn.dest) != (source, dest):
                raise InvariantError(f"Synapse keyed {source}->{dest} points {syn.source}->{syn.dest}")
            expected = self.model.synapse_type(
                self.neurons[source].neuron_type, self.neurons[dest].neuron_type
            )
            if syn.synapse_type is not expected:
                raise InvariantError(f"Synapse {source}->{dest} typed {syn.synapse_type.name}")
            if syn.weight * self.model.synapse_sign(syn.synapse_type) < 0:
                raise InvariantError(f"Synapse {source}->{dest} has a weight of the wrong sign")
        for nid in range(n):
            if len(self._incoming[nid]) > cap or len(self._outgoing[nid]) > cap:
                raise InvariantError(f"Neuron {nid} exceeds the synapse cap of {cap}")

    def telemetry(self) -> Telemetry:
        """Network statistics snapshot."""
        weights = [abs(s.weight) for s in self.synapses.values()]
        inhibitory = sum(1 for s in self.synapses.values() if s.synapse_type.source_inhibitory)
        return Telemetry(
            step=self.context.step,
            total_neurons=len(self.neurons),
            total_synapses=len(self.synapses),
            epoch_spikes=sum(n.spike_count for n in self.neurons),
            mean_abs_weight=float(np.mean(weights)) if weights else 0.0,
            excitatory_synapses=len(self.synapses) - inhibitory,
            inhibitory_synapses=inhibitory,
        )
