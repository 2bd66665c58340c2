"""
Growth Simulation Configuration: all tunables for a NeuroGrowth run.

Provides a single ``GrowthSimConfig`` dataclass grouping five sections
(simulation, neurons, synapses, growth, layout).  Configuration can be
loaded from a dict of overrides, a JSON file, or left at defaults, and is
validated before any simulation step runs.

Usage::

    from growth_config import load_growth_config

    # Defaults
    cfg = load_growth_config()

    # With overrides
    cfg = load_growth_config({"simulation": {"width": 4, "height": 4}})

    # From JSON file
    cfg = load_growth_config(config_path="params/small_grid.json")
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from delay_queue import DELAY_QUEUE_LENGTH, delay_to_ticks

logger = logging.getLogger("neurogrowth.config")

Range = Tuple[float, float]

SECTIONS = ("simulation", "neurons", "synapses", "growth", "layout")


class ConfigurationError(ValueError):
    """A required configuration field is missing or invalid."""

    def __init__(self, field_name: str, message: str):
        super().__init__(f"{field_name}: {message}")
        self.field_name = field_name


# ── Section dataclasses ────────────────────────────────────────────────


@dataclass
class SimulationConfig:
    """Grid shape, timing, caps and seed for one run.

    ``max_firing_rate`` (Hz) is the expected ceiling on a neuron's epoch
    rate; the growth update logs a warning for neurons that exceed it.
    """

    width: int = 10
    height: int = 10
    epoch_duration: float = 1.0
    num_epochs: int = 10
    delta_t: float = 1e-4
    max_firing_rate: float = 200.0
    max_synapses_per_neuron: int = 200
    seed: int = 1
    state_output_file: str = "results.xml"

    @property
    def total_neurons(self) -> int:
        return self.width * self.height

    @property
    def steps_per_epoch(self) -> int:
        return int(round(self.epoch_duration / self.delta_t))


@dataclass
class NeuronParams:
    """LIF neuron parameter ranges; each neuron draws uniformly from [low, high]."""

    i_inject: Range = (13.5e-9, 13.5e-9)
    i_noise: Range = (1.0e-9, 1.5e-9)
    v_thresh: Range = (15.0e-3, 15.0e-3)
    v_resting: Range = (0.0, 0.0)
    v_reset: Range = (13.5e-3, 13.5e-3)
    v_init: Range = (13.0e-3, 13.0e-3)
    starter_v_thresh: Range = (13.565e-3, 13.655e-3)
    starter_v_reset: Range = (13.0e-3, 13.0e-3)
    c_m: float = 3e-8
    r_m: float = 1e6
    t_refract: float = 3e-3


@dataclass
class SynapseParams:
    """Per-type transmission delays and PSR time constants (seconds).

    Keys are synapse type names: ``EE``, ``EI``, ``IE``, ``II`` where the
    first letter is the source class and the second the destination class.
    """

    delay: Dict[str, float] = field(default_factory=lambda: {
        "EE": 1.5e-3, "EI": 0.8e-3, "IE": 0.8e-3, "II": 0.8e-3,
    })
    tau: Dict[str, float] = field(default_factory=lambda: {
        "EE": 3e-3, "EI": 3e-3, "IE": 6e-3, "II": 6e-3,
    })
    weight_scale: float = 1e-8


@dataclass
class GrowthParams:
    """Homeostatic outgrowth parameters.

    ``rate_constant`` scales the relative radius change per epoch.
    ``target_rate`` is in spikes/second.
    """

    epsilon: float = 0.6
    beta: float = 0.1
    rate_constant: float = 0.1
    target_rate: float = 1.9
    min_radius: float = 0.1
    start_radius: float = 0.4
    burstiness_bin: float = 1.0
    spikes_bin: float = 0.01

    @property
    def max_rate(self) -> float:
        return self.target_rate / self.epsilon


@dataclass
class LayoutParams:
    """Neuron type layout: random fractions or fixed index lists."""

    frac_excitatory: float = 0.98
    frac_starter: float = 0.1
    fixed_layout: bool = False
    starter_neurons: List[int] = field(default_factory=list)
    inhibitory_neurons: List[int] = field(default_factory=list)


# ── Top-level config ───────────────────────────────────────────────────


@dataclass
class GrowthSimConfig:
    """Top-level configuration.

    Use ``load_growth_config()`` to create an instance with overrides
    applied and validated.
    """

    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    neurons: NeuronParams = field(default_factory=NeuronParams)
    synapses: SynapseParams = field(default_factory=SynapseParams)
    growth: GrowthParams = field(default_factory=GrowthParams)
    layout: LayoutParams = field(default_factory=LayoutParams)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Factory ────────────────────────────────────────────────────────────


def _apply_overrides(obj: Any, overrides: Dict[str, Any]) -> None:
    """Apply a dict of overrides to a dataclass instance (in-place)."""
    for key, value in overrides.items():
        if not hasattr(obj, key):
            logger.debug("Ignoring unknown config key %s", key)
            continue
        current = getattr(obj, key)
        if isinstance(current, tuple) and isinstance(value, (list, tuple)):
            value = tuple(value)
        elif isinstance(current, dict) and isinstance(value, dict):
            value = {**current, **value}
        setattr(obj, key, value)


def load_growth_config(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[str] = None,
    validate: bool = True,
) -> GrowthSimConfig:
    """Create a ``GrowthSimConfig`` with defaults, optionally overridden.

    Override precedence (highest wins):
        1. ``overrides`` dict argument
        2. ``config_path`` JSON file
        3. Built-in defaults

    Args:
        overrides: Dict keyed by section name whose values are dicts of
            field→value pairs.
        config_path: Path to a JSON file with the same structure as
            ``overrides``.
        validate: Run ``validate_config`` on the result.

    Returns:
        Fully populated ``GrowthSimConfig``.

    Raises:
        ConfigurationError: if the file is missing or unreadable, or a
            field is invalid.
    """
    cfg = GrowthSimConfig()

    # Layer 1: JSON file
    if config_path is not None:
        p = Path(config_path).expanduser()
        try:
            with open(p) as f:
                file_data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError("config_path", f"cannot read {p}: {exc}") from exc
        if not isinstance(file_data, dict):
            raise ConfigurationError("config_path", f"{p} does not hold a JSON object")
        for section in SECTIONS:
            if section in file_data:
                _apply_overrides(getattr(cfg, section), file_data[section])
        logger.info("Loaded configuration from %s", p)

    # Layer 2: dict overrides (win over file)
    if overrides is not None:
        for section in SECTIONS:
            if section in overrides:
                _apply_overrides(getattr(cfg, section), overrides[section])

    if validate:
        validate_config(cfg)
    return cfg


# ── Validation ─────────────────────────────────────────────────────────


def _require(condition: bool, field_name: str, message: str) -> None:
    if not condition:
        raise ConfigurationError(field_name, message)


def _check_range(name: str, value: Any) -> None:
    _require(
        isinstance(value, tuple) and len(value) == 2,
        name, f"expected a [low, high] pair, got {value!r}",
    )
    _require(value[0] <= value[1], name, f"low {value[0]} exceeds high {value[1]}")


def validate_config(cfg: GrowthSimConfig) -> None:
    """Check every field the simulation depends on.

    Raises:
        ConfigurationError: naming the first invalid field.
    """
    sim = cfg.simulation
    for name in ("width", "height", "num_epochs", "max_synapses_per_neuron", "seed"):
        _require(
            isinstance(getattr(sim, name), int) and not isinstance(getattr(sim, name), bool),
            f"simulation.{name}", "must be an integer",
        )
    _require(sim.width > 0, "simulation.width", "must be positive")
    _require(sim.height > 0, "simulation.height", "must be positive")
    _require(sim.delta_t > 0, "simulation.delta_t", "must be positive")
    _require(sim.epoch_duration > 0, "simulation.epoch_duration", "must be positive")
    _require(
        math.isclose(sim.steps_per_epoch * sim.delta_t, sim.epoch_duration, rel_tol=1e-9)
        and sim.steps_per_epoch >= 1,
        "simulation.epoch_duration", "must be a whole number of delta_t steps",
    )
    _require(sim.num_epochs >= 0, "simulation.num_epochs", "must not be negative")
    _require(sim.max_synapses_per_neuron >= 1, "simulation.max_synapses_per_neuron", "must be >= 1")
    _require(sim.max_firing_rate > 0, "simulation.max_firing_rate", "must be positive")
    _require(bool(sim.state_output_file), "simulation.state_output_file", "must not be empty")

    neu = cfg.neurons
    for name in ("i_inject", "i_noise", "v_thresh", "v_resting", "v_reset",
                 "v_init", "starter_v_thresh", "starter_v_reset"):
        _check_range(f"neurons.{name}", getattr(neu, name))
    _require(neu.i_noise[0] >= 0, "neurons.i_noise", "must not be negative")
    _require(neu.c_m > 0, "neurons.c_m", "must be positive")
    _require(neu.r_m > 0, "neurons.r_m", "must be positive")
    _require(neu.t_refract >= 0, "neurons.t_refract", "must not be negative")

    syn = cfg.synapses
    for kind in ("EE", "EI", "IE", "II"):
        _require(kind in syn.delay, f"synapses.delay.{kind}", "missing")
        _require(kind in syn.tau, f"synapses.tau.{kind}", "missing")
        ticks = delay_to_ticks(syn.delay[kind], sim.delta_t)
        _require(
            ticks < DELAY_QUEUE_LENGTH, f"synapses.delay.{kind}",
            f"{ticks} ticks does not fit a {DELAY_QUEUE_LENGTH}-slot delay queue",
        )
        _require(syn.delay[kind] >= 0, f"synapses.delay.{kind}", "must not be negative")
        _require(syn.tau[kind] > 0, f"synapses.tau.{kind}", "must be positive")
    _require(syn.weight_scale > 0, "synapses.weight_scale", "must be positive")

    gro = cfg.growth
    _require(0 < gro.epsilon <= 1, "growth.epsilon", "must lie in (0, 1]")
    _require(gro.beta > 0, "growth.beta", "must be positive")
    _require(0 < gro.rate_constant <= 1, "growth.rate_constant", "must lie in (0, 1]")
    _require(gro.target_rate >= 0, "growth.target_rate", "must not be negative")
    _require(gro.min_radius > 0, "growth.min_radius", "must be positive")
    _require(gro.start_radius >= gro.min_radius, "growth.start_radius", "must be >= min_radius")
    _require(gro.burstiness_bin >= sim.delta_t, "growth.burstiness_bin", "must be >= delta_t")
    _require(gro.spikes_bin >= sim.delta_t, "growth.spikes_bin", "must be >= delta_t")

    lay = cfg.layout
    n = sim.total_neurons
    if lay.fixed_layout:
        for name in ("starter_neurons", "inhibitory_neurons"):
            ids = getattr(lay, name)
            _require(
                all(isinstance(i, int) and 0 <= i < n for i in ids),
                f"layout.{name}", f"indices must lie in 0..{n - 1}",
            )
            _require(len(set(ids)) == len(ids), f"layout.{name}", "contains duplicates")
        _require(
            not set(lay.starter_neurons) & set(lay.inhibitory_neurons),
            "layout.starter_neurons", "starter neurons must be excitatory",
        )
    else:
        _require(0 <= lay.frac_excitatory <= 1, "layout.frac_excitatory", "must lie in [0, 1]")
        _require(0 <= lay.frac_starter <= 1, "layout.frac_starter", "must lie in [0, 1]")
        _require(
            lay.frac_starter <= lay.frac_excitatory, "layout.frac_starter",
            "starter neurons must be excitatory, so frac_starter <= frac_excitatory",
        )
