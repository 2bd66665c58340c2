"""
NeuroGrowth Persistence: state report and checkpoint (memory image).

Two outputs:

1. ``save_state()`` writes the human-readable final report, an XML ``<SimState>``
   document of tagged matrices (name, shape, multiplier) holding the growth
   histories and run metadata.  Floats are written with ``repr`` so equal
   runs give byte-identical reports.
2. ``save_memory()`` / ``load_memory()`` handle a checkpoint holding every
   neuron's and synapse's dynamic state, the growth state, the global step
   counter and the RNG state.  A ``.msgpack`` path gives a binary file,
   anything else JSON text.  Loading then continuing a run is
   indistinguishable from never having stopped.

Usage::

    from growth_persistence import StateSerializer
    serializer = StateSerializer(simulator)
    serializer.save_memory("run.msgpack")
    ...
    serializer.load_memory("run.msgpack")   # before simulate()
    serializer.save_state("results.xml")
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Union

import msgpack
import numpy as np

from delay_queue import DelayQueue
from growth_engine import GrowthState, overlap_matrix
from growth_foundation import Neuron, NeuronType, SimulationContext, Synapse, SynapseType

logger = logging.getLogger("neurogrowth.persistence")

CHECKPOINT_VERSION = "1.0"
SUPPORTED_VERSIONS = ("1.0",)

# Ordinals written to the neuronTypes matrix of the state report
NEURON_TYPE_CODES = {
    NeuronType.INHIBITORY: 1,
    NeuronType.EXCITATORY: 2,
    NeuronType.STARTER: 3,
}

PathLike = Union[str, Path]


class CheckpointError(ValueError):
    """The checkpoint does not match the configuration or is corrupt."""


# ── Helpers ────────────────────────────────────────────────────────────


def _fmt(value: Any) -> str:
    if isinstance(value, (bool, np.bool_)):
        return str(int(value))
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    return repr(float(value))


def _matrix(name: str, rows: Sequence[Sequence[Any]], multiplier: float = 1.0) -> List[str]:
    """Lines of one tagged ``<Matrix>`` element."""
    columns = len(rows[0]) if rows else 0
    lines = [
        f'   <Matrix name="{name}" type="complete" rows="{len(rows)}" '
        f'columns="{columns}" multiplier="{multiplier!r}">'
    ]
    for row in rows:
        lines.append("   " + " ".join(_fmt(v) for v in row))
    lines.append("</Matrix>")
    return lines


def _floats(values: Iterable[Any]) -> List[float]:
    return [float(v) for v in values]


def _is_msgpack(path: PathLike) -> bool:
    return str(path).endswith(".msgpack")


# ── Serializer ─────────────────────────────────────────────────────────


class StateSerializer:
    """Reads and writes the persisted forms of a ``Simulator``.

    Args:
        simulator: The simulator whose state is saved or restored.
    """

    def __init__(self, simulator: Any) -> None:
        self.sim = simulator

    # -- State report -------------------------------------------------------

    def render_state(self) -> str:
        """The full state report as a string."""
        sim = self.sim
        net = sim.network
        st = sim.growth.state
        sim_cfg = sim.config.simulation

        lines = [
            '<?xml version="1.0" standalone="no"?>',
            "<!-- State output file for the receptive-field growth model -->",
            "<SimState>",
        ]
        lines += _matrix("radiiHistory", st.radii_history)
        lines += _matrix("ratesHistory", st.rates_history)
        lines += _matrix("spikeCountsHistory", st.spike_counts_history)
        lines += _matrix("burstinessHist", [st.burstiness_hist])
        lines += _matrix("spikesHistory", [st.spikes_history])
        lines += _matrix("xloc", [st.xloc.tolist()])
        lines += _matrix("yloc", [st.yloc.tolist()])
        lines += _matrix("neuronTypes", [[NEURON_TYPE_CODES[n.neuron_type] for n in net.neurons]])
        lines += _matrix("neuronThresh", [[n.v_thresh for n in net.neurons]])
        lines += _matrix(
            "starterNeurons",
            [[n.neuron_id for n in net.neurons if n.neuron_type is NeuronType.STARTER]],
        )
        lines += _matrix("Tsim", [[float(sim_cfg.epoch_duration)]])
        lines += _matrix("simulationEndTime", [[sim.simulated_time]])
        lines.append("</SimState>")
        return "\n".join(lines) + "\n"

    def save_state(self, path: PathLike) -> None:
        """Write the state report to ``path``."""
        Path(path).write_text(self.render_state())
        logger.info("State report written to %s", path)

    # -- Checkpoint: save ---------------------------------------------------

    @staticmethod
    def _serialize_neuron(neuron: Neuron) -> Dict[str, Any]:
        return {
            "neuron_id": neuron.neuron_id,
            "neuron_type": neuron.neuron_type.name,
            "vm": neuron.vm,
            "v_thresh": neuron.v_thresh,
            "v_resting": neuron.v_resting,
            "v_reset": neuron.v_reset,
            "v_init": neuron.v_init,
            "i_inject": neuron.i_inject,
            "i_noise": neuron.i_noise,
            "c_m": neuron.c_m,
            "r_m": neuron.r_m,
            "t_refract": neuron.t_refract,
            "refractory_steps": neuron.refractory_steps,
            "refractory_remaining": neuron.refractory_remaining,
            "spike_count": neuron.spike_count,
            "spike_steps": list(neuron.spike_steps),
            "c1": neuron.c1,
            "c2": neuron.c2,
            "i0": neuron.i0,
        }

    @staticmethod
    def _serialize_synapse(syn: Synapse) -> Dict[str, Any]:
        return {
            "source": syn.source,
            "dest": syn.dest,
            "synapse_type": syn.synapse_type.name,
            "weight": syn.weight,
            "psr": syn.psr,
            "tau": syn.tau,
            "decay": syn.decay,
            "delay_ticks": syn.delay_ticks,
            "delay_queue": syn.delay_queue.to_dict(),
        }

    @staticmethod
    def _serialize_growth(st: GrowthState) -> Dict[str, Any]:
        return {
            "radii": _floats(st.radii),
            "rates": _floats(st.rates),
            "outgrowth": _floats(st.outgrowth),
            "delta_r": _floats(st.delta_r),
            "radii_history": [list(r) for r in st.radii_history],
            "rates_history": [list(r) for r in st.rates_history],
            "spike_counts_history": [list(r) for r in st.spike_counts_history],
            "burstiness_hist": list(st.burstiness_hist),
            "spikes_history": list(st.spikes_history),
            "epochs_completed": st.epochs_completed,
        }

    def capture(self) -> Dict[str, Any]:
        """The checkpoint as a plain dict."""
        sim = self.sim
        sim_cfg = sim.config.simulation
        net = sim.network
        return {
            "version": CHECKPOINT_VERSION,
            "width": sim_cfg.width,
            "height": sim_cfg.height,
            "delta_t": sim_cfg.delta_t,
            "epoch_duration": sim_cfg.epoch_duration,
            "neuron_count": len(net.neurons),
            "synapse_count": len(net.synapses),
            "neurons": [self._serialize_neuron(n) for n in net.neurons],
            "synapses": [self._serialize_synapse(s) for s in net.iter_synapses()],
            "growth": self._serialize_growth(sim.growth.state),
            "simulation_step": sim.context.step,
            "rng_state": sim.context.rng_state(),
        }

    def save_memory(self, path: PathLike) -> None:
        """Write a checkpoint (``.msgpack`` binary, otherwise JSON text)."""
        data = self.capture()
        if _is_msgpack(path):
            with open(path, "wb") as f:
                f.write(msgpack.packb(data, use_bin_type=True))
        else:
            with open(path, "w") as f:
                json.dump(data, f)
        logger.info(
            "Checkpoint written to %s: %d neurons, %d synapses, step %d",
            path, data["neuron_count"], data["synapse_count"], data["simulation_step"],
        )

    # -- Checkpoint: load ---------------------------------------------------

    def load_memory(self, path: PathLike) -> None:
        """Restore a checkpoint written by ``save_memory``.

        The file is validated completely before any state is replaced, so a
        failed load leaves the simulator untouched.

        Raises:
            CheckpointError: on a mismatch with the configuration or a
                corrupt/truncated file.
        """
        try:
            if _is_msgpack(path):
                with open(path, "rb") as f:
                    data = msgpack.unpackb(f.read(), raw=False)
            else:
                with open(path, "r") as f:
                    data = json.load(f)
        except OSError as exc:
            raise CheckpointError(f"Cannot read checkpoint {path}: {exc}") from exc
        except (ValueError, TypeError, msgpack.exceptions.UnpackException) as exc:
            raise CheckpointError(f"Corrupt checkpoint {path}: {exc}") from exc

        try:
            self.restore(data)
        except CheckpointError as exc:
            logger.error("Checkpoint %s rejected: %s", path, exc)
            raise
        logger.info(
            "Checkpoint loaded from %s: step %d, %d epochs completed",
            path, self.sim.context.step, self.sim.epochs_completed,
        )

    def restore(self, data: Any) -> None:
        """Validate ``data`` and install it into the simulator."""
        if not isinstance(data, dict):
            raise CheckpointError("Checkpoint root is not a mapping")
        try:
            neurons, synapses, state, step = self._decode(data)
        except CheckpointError:
            raise
        except (KeyError, TypeError, ValueError, IndexError) as exc:
            raise CheckpointError(f"Malformed checkpoint record: {exc!r}") from exc

        sim = self.sim
        net = sim.network
        sim.context.set_rng_state(data["rng_state"])
        sim.context.step = step
        net.neurons = neurons
        net.clear_synapses()
        for syn in synapses:
            net.attach_synapse(syn)
        net.summation.fill(0.0)
        sim.growth.state = state

    def _decode(self, data: Dict[str, Any]):
        sim = self.sim
        sim_cfg = sim.config.simulation
        n = sim_cfg.total_neurons
        cap = sim_cfg.max_synapses_per_neuron

        version = data.get("version")
        if version not in SUPPORTED_VERSIONS:
            raise CheckpointError(f"Unsupported checkpoint version {version!r}")
        if (data["width"], data["height"]) != (sim_cfg.width, sim_cfg.height):
            raise CheckpointError(
                f"Grid {data['width']}x{data['height']} does not match "
                f"configured {sim_cfg.width}x{sim_cfg.height}"
            )
        if data["neuron_count"] != n or len(data["neurons"]) != n:
            raise CheckpointError(
                f"Neuron count {data['neuron_count']} ({len(data['neurons'])} records) "
                f"does not match configured {n}"
            )
        if data["synapse_count"] != len(data["synapses"]):
            raise CheckpointError(
                f"Header declares {data['synapse_count']} synapses, "
                f"found {len(data['synapses'])} records"
            )
        if data["synapse_count"] > n * cap:
            raise CheckpointError(
                f"{data['synapse_count']} synapses exceed {n} neurons x cap {cap}"
            )
        if data["delta_t"] != sim_cfg.delta_t or data["epoch_duration"] != sim_cfg.epoch_duration:
            raise CheckpointError(
                f"Timing delta_t={data['delta_t']}, epoch_duration={data['epoch_duration']} "
                f"does not match configuration"
            )
        try:
            SimulationContext().set_rng_state(data["rng_state"])
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise CheckpointError(f"Unusable RNG state: {exc!r}") from exc

        neurons = [self._decode_neuron(nd, nid) for nid, nd in enumerate(data["neurons"])]
        synapses = self._decode_synapses(data["synapses"], neurons, n, cap)
        state = self._decode_growth(data["growth"], n)

        step = int(data["simulation_step"])
        expected = state.epochs_completed * sim_cfg.steps_per_epoch
        if step != expected:
            raise CheckpointError(
                f"Step {step} does not close epoch {state.epochs_completed} (expected {expected})"
            )
        return neurons, synapses, state, step

    @staticmethod
    def _decode_neuron(nd: Dict[str, Any], nid: int) -> Neuron:
        if nd["neuron_id"] != nid:
            raise CheckpointError(f"Neuron record {nid} carries id {nd['neuron_id']}")
        try:
            ntype = NeuronType[nd["neuron_type"]]
        except KeyError:
            raise CheckpointError(f"Neuron {nid} has unknown type {nd['neuron_type']!r}") from None
        return Neuron(
            neuron_id=nid,
            neuron_type=ntype,
            vm=float(nd["vm"]),
            v_thresh=float(nd["v_thresh"]),
            v_resting=float(nd["v_resting"]),
            v_reset=float(nd["v_reset"]),
            v_init=float(nd["v_init"]),
            i_inject=float(nd["i_inject"]),
            i_noise=float(nd["i_noise"]),
            c_m=float(nd["c_m"]),
            r_m=float(nd["r_m"]),
            t_refract=float(nd["t_refract"]),
            refractory_steps=int(nd["refractory_steps"]),
            refractory_remaining=int(nd["refractory_remaining"]),
            spike_count=int(nd["spike_count"]),
            spike_steps=[int(s) for s in nd["spike_steps"]],
            c1=float(nd["c1"]),
            c2=float(nd["c2"]),
            i0=float(nd["i0"]),
        )

    def _decode_synapses(
        self,
        records: List[Dict[str, Any]],
        neurons: List[Neuron],
        n: int,
        cap: int,
    ) -> List[Synapse]:
        model = self.sim.network.model
        incoming = [0] * n
        outgoing = [0] * n
        seen = set()
        synapses = []
        for sd in records:
            source, dest = int(sd["source"]), int(sd["dest"])
            if not (0 <= source < n and 0 <= dest < n) or source == dest:
                raise CheckpointError(f"Synapse {source}->{dest} references a non-existent bin")
            if (source, dest) in seen:
                raise CheckpointError(f"Duplicate synapse {source}->{dest}")
            seen.add((source, dest))
            try:
                syn_type = SynapseType[sd["synapse_type"]]
            except KeyError:
                raise CheckpointError(
                    f"Synapse {source}->{dest} has unknown type {sd['synapse_type']!r}"
                ) from None
            expected = model.synapse_type(neurons[source].neuron_type, neurons[dest].neuron_type)
            if syn_type is not expected:
                raise CheckpointError(
                    f"Synapse {source}->{dest} typed {syn_type.name}, endpoints imply {expected.name}"
                )
            weight = float(sd["weight"])
            if weight * model.synapse_sign(syn_type) < 0:
                raise CheckpointError(f"Synapse {source}->{dest} has a weight of the wrong sign")
            incoming[dest] += 1
            outgoing[source] += 1
            if incoming[dest] > cap or outgoing[source] > cap:
                raise CheckpointError(f"Synapse {source}->{dest} exceeds the cap of {cap}")
            queue = DelayQueue.from_dict(sd["delay_queue"])
            delay_ticks = int(sd["delay_ticks"])
            if not 1 <= delay_ticks <= queue.max_delay:
                raise CheckpointError(f"Synapse {source}->{dest} delay {delay_ticks} out of range")
            synapses.append(Synapse(
                source=source,
                dest=dest,
                synapse_type=syn_type,
                weight=weight,
                psr=float(sd["psr"]),
                tau=float(sd["tau"]),
                decay=float(sd["decay"]),
                delay_ticks=delay_ticks,
                delay_queue=queue,
            ))
        return synapses

    def _decode_growth(self, gd: Dict[str, Any], n: int) -> GrowthState:
        def vector(key: str) -> np.ndarray:
            arr = np.array(_floats(gd[key]), dtype=np.float64)
            if arr.shape != (n,):
                raise CheckpointError(f"Growth field {key} has {arr.size} entries, expected {n}")
            return arr

        def rows(key: str, cast) -> List[list]:
            out = [[cast(v) for v in row] for row in gd[key]]
            if any(len(row) != n for row in out):
                raise CheckpointError(f"Growth history {key} has rows of the wrong length")
            return out

        epochs = int(gd["epochs_completed"])
        if epochs > self.sim.config.simulation.num_epochs:
            raise CheckpointError(
                f"Checkpoint has {epochs} epochs, configuration runs only "
                f"{self.sim.config.simulation.num_epochs}"
            )
        radii_history = rows("radii_history", float)
        rates_history = rows("rates_history", float)
        spike_counts_history = rows("spike_counts_history", int)
        if (len(radii_history), len(rates_history), len(spike_counts_history)) != (
            epochs + 1, epochs + 1, epochs,
        ):
            raise CheckpointError(f"Growth histories do not cover {epochs} epochs")

        radii = vector("radii")
        min_radius = self.sim.config.growth.min_radius
        if (radii < min_radius).any():
            raise CheckpointError(f"Radius below the configured minimum {min_radius}")

        template = GrowthState.initial(self.sim.network, self.sim.config.growth)
        dist = template.dist
        return GrowthState(
            xloc=template.xloc,
            yloc=template.yloc,
            dist=dist,
            radii=radii,
            rates=vector("rates"),
            outgrowth=vector("outgrowth"),
            delta_r=vector("delta_r"),
            area=overlap_matrix(radii, dist),
            radii_history=radii_history,
            rates_history=rates_history,
            spike_counts_history=spike_counts_history,
            burstiness_hist=[int(v) for v in gd["burstiness_hist"]],
            spikes_history=[int(v) for v in gd["spikes_history"]],
            epochs_completed=epochs,
        )
