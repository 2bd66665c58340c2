"""Simple usage example for NeuroGrowth.

Grows connections on a small grid, checkpoints halfway, resumes from the
checkpoint and writes the state report.
"""

import sys
import os
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from growth_config import load_growth_config
from growth_persistence import StateSerializer
from growth_simulator import Simulator


def main():
    cfg = load_growth_config({
        "simulation": {"width": 5, "height": 5, "epoch_duration": 0.1, "num_epochs": 6},
        "growth": {"start_radius": 0.4, "rate_constant": 0.2},
    })

    sim = Simulator(cfg)
    tel = sim.network.telemetry()
    print("=== Initial State ===")
    print(f"Neurons: {tel.total_neurons}")
    print(f"Synapses: {tel.total_synapses}")

    print("\n=== Growth: first 3 epochs ===")
    for result in sim.simulate(until_epoch=3):
        print(
            f"Epoch {result.epoch}: {result.spikes} spikes, "
            f"{result.growth.total_synapses} synapses "
            f"(+{result.growth.created} -{result.growth.removed}), "
            f"mean radius {result.growth.mean_radius:.3f}"
        )

    workdir = tempfile.mkdtemp(prefix="neurogrowth_")
    mem = os.path.join(workdir, "halfway.msgpack")
    StateSerializer(sim).save_memory(mem)
    print(f"\n=== Checkpoint ===\nSaved to {mem}")

    resumed = Simulator(cfg)
    serializer = StateSerializer(resumed)
    serializer.load_memory(mem)
    print(f"Restored at step {resumed.context.step}, epoch {resumed.epochs_completed}")

    print("\n=== Growth: remaining epochs ===")
    for result in resumed.simulate():
        print(
            f"Epoch {result.epoch}: {result.spikes} spikes, "
            f"{result.growth.total_synapses} synapses, "
            f"mean rate {result.growth.mean_rate:.2f} Hz"
        )

    tel = resumed.network.telemetry()
    print("\n=== Telemetry ===")
    print(f"Synapses: {tel.total_synapses} ({tel.inhibitory_synapses} inhibitory)")
    print(f"Mean |weight|: {tel.mean_abs_weight:.3e}")
    print(f"Simulated time: {resumed.simulated_time:.2f}s")

    report = os.path.join(workdir, "results.xml")
    serializer.save_state(report)
    print(f"State report written to {report}")


if __name__ == "__main__":
    main()
