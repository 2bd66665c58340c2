"""
NeuroGrowth Simulator - Epoch Scheduler

Drives the fine-step loop for one epoch, hands the epoch's spike counts to
the growth engine, resets the counters, and repeats for the configured
number of epochs.  The global step counter is never reset between epochs,
so a run resumed from a checkpoint continues the same step trajectory.

Usage::

    from growth_config import load_growth_config
    from growth_simulator import Simulator

    sim = Simulator(load_growth_config({"simulation": {"width": 5, "height": 5}}))
    sim.simulate()
    print(sim.growth.state.radii)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from growth_config import GrowthSimConfig
from growth_engine import GrowthEngine, GrowthUpdate
from growth_foundation import NeuronModel, Network, SimulationContext

logger = logging.getLogger("neurogrowth.simulator")


@dataclass
class EpochResult:
    """Result of one epoch.

    Attributes:
        epoch: 1-based epoch index.
        start_step: Global step at which the epoch began.
        end_step: Global step after the epoch's last fine step.
        spikes: Total spikes emitted during the epoch.
        growth: Summary of the growth update that closed the epoch.
    """

    epoch: int = 0
    start_step: int = 0
    end_step: int = 0
    spikes: int = 0
    growth: GrowthUpdate = field(default_factory=GrowthUpdate)


class Simulator:
    """Owns the simulation context, the network and the growth engine.

    Args:
        config: Validated run configuration (never mutated).
        model: Neuron model strategy (``LIFModel`` if omitted).
    """

    def __init__(self, config: GrowthSimConfig, model: Optional[NeuronModel] = None):
        self.config = config
        self.context = SimulationContext(config.simulation.seed)
        self.network = Network(config, self.context, model)
        self.network.setup()
        self.growth = GrowthEngine(self.network, config)
        self._event_handlers: Dict[str, List[Callable]] = {}

    # -----------------------------------------------------------------------
    # Properties
    # -----------------------------------------------------------------------

    @property
    def epochs_completed(self) -> int:
        return self.growth.state.epochs_completed

    @property
    def simulated_time(self) -> float:
        """Seconds of simulated time so far."""
        return self.context.step * self.config.simulation.delta_t

    # -----------------------------------------------------------------------
    # Main loop
    # -----------------------------------------------------------------------

    def run_epoch(self, epoch: int) -> EpochResult:
        """Run the fine steps of one epoch, then apply its growth update."""
        ctx = self.context
        start = ctx.step
        end = start + self.config.simulation.steps_per_epoch
        network = self.network
        while ctx.step < end:
            network.advance()

        spikes = int(network.spike_counts().sum())
        update = self.growth.update_connections(epoch)
        network.reset_spike_counts()
        network.check_invariants()

        result = EpochResult(
            epoch=epoch, start_step=start, end_step=ctx.step, spikes=spikes, growth=update,
        )
        self._emit("epoch", result=result)
        return result

    def simulate(self, until_epoch: Optional[int] = None) -> List[EpochResult]:
        """Run every remaining epoch (or up to ``until_epoch``).

        Continues from ``epochs_completed``, so a simulator restored from a
        checkpoint picks up where the saved run stopped.
        """
        last = self.config.simulation.num_epochs
        if until_epoch is not None:
            last = min(last, until_epoch)
        results = []
        for epoch in range(self.epochs_completed + 1, last + 1):
            result = self.run_epoch(epoch)
            logger.info(
                "Epoch %d/%d: %d spikes, %d synapses, mean radius %.4f, t=%.4fs",
                epoch,
                self.config.simulation.num_epochs,
                result.spikes,
                result.growth.total_synapses,
                result.growth.mean_radius,
                self.simulated_time,
            )
            results.append(result)
        return results

    # -----------------------------------------------------------------------
    # Event system
    # -----------------------------------------------------------------------

    def register_event_handler(self, event_type: str, callback: Callable) -> None:
        """Subscribe to simulator events (currently ``epoch``)."""
        self._event_handlers.setdefault(event_type, []).append(callback)

    def _emit(self, event_type: str, **kwargs: Any) -> None:
        for cb in self._event_handlers.get(event_type, []):
            cb(**kwargs)
