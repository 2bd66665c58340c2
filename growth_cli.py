"""
NeuroGrowth command line driver.

Loads a JSON parameter file, optionally restores a checkpoint, runs every
configured growth epoch, writes the state report and optionally a
checkpoint.

Usage:
    python growth_cli.py -t params.json
    python growth_cli.py -t params.json -o results.xml -w run.msgpack
    python growth_cli.py -t params.json -r run.msgpack -w run2.msgpack

Exit status is 0 on success and 1 on any configuration, checkpoint or I/O
failure.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import List, Optional

from growth_config import ConfigurationError, load_growth_config
from growth_persistence import CheckpointError, StateSerializer
from growth_simulator import Simulator

logger = logging.getLogger("neurogrowth.cli")


def run_simulation(
    param_file: str,
    state_out: Optional[str] = None,
    mem_in: Optional[str] = None,
    mem_out: Optional[str] = None,
) -> Simulator:
    """Run one simulation end to end.

    Args:
        param_file: JSON parameter file.
        state_out: State report path (defaults to the configured
            ``state_output_file``).
        mem_in: Checkpoint to restore before the first epoch.
        mem_out: Checkpoint to write after the last epoch.

    Returns:
        The finished ``Simulator``.
    """
    config = load_growth_config(config_path=param_file)
    for section, values in config.to_dict().items():
        logger.info("%s parameters: %s", section, values)
    sim = Simulator(config)
    serializer = StateSerializer(sim)

    if mem_in:
        serializer.load_memory(mem_in)

    start_step = sim.context.step
    start = time.time()
    sim.simulate()
    elapsed = time.time() - start

    serializer.save_state(state_out or config.simulation.state_output_file)
    if mem_out:
        serializer.save_memory(mem_out)

    # only the epochs run by this process, not those restored from mem_in
    simulated = (sim.context.step - start_step) * config.simulation.delta_t
    logger.info("time simulated: %s", simulated)
    logger.info("time elapsed: %.3f", elapsed)
    if elapsed > 0:
        logger.info("ssps (simulation seconds / real time seconds): %.4f", simulated / elapsed)
    return sim


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Receptive-field growth simulator for a grid of LIF neurons"
    )
    parser.add_argument(
        "-t", "--stateinfile",
        required=True,
        help="simulation parameter file (JSON)",
    )
    parser.add_argument(
        "-o", "--stateoutfile",
        default=None,
        help="simulation state output filename",
    )
    parser.add_argument(
        "-r", "--meminfile",
        default=None,
        help="simulation memory image input filename",
    )
    parser.add_argument(
        "-w", "--memoutfile",
        default=None,
        help="simulation memory image output filename",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="log growth details for every epoch",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        run_simulation(
            args.stateinfile,
            state_out=args.stateoutfile,
            mem_in=args.meminfile,
            mem_out=args.memoutfile,
        )
    except ConfigurationError as exc:
        logger.error("Failed while parsing simulation parameters: %s", exc)
        return 1
    except CheckpointError as exc:
        logger.error("Failed to load memory image: %s", exc)
        return 1
    except OSError as exc:
        logger.error("I/O failure: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
