#!/usr/bin/env python3
"""Kinematic simulation of one or more mower units inside a pylon square.

Usage:
    # Single unit, 5 minutes of simulated time
    python scripts/simulate.py --duration 300

    # Three units gossiping over a network that loses half the datagrams
    python scripts/simulate.py --units 3 --loss 0.5

    # Animal monitor with a fox walking past
    python scripts/simulate.py --mode monitor_animal --animal fox
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from mower.coordination.notifier import LoggingNotifyTransport
from mower.core.config import MowerConfig, OperatingMode, SwarmConfig
from mower.core.state import Behavior
from mower.perception.classes import ObjectClass
from mower.simulation import SimObject, SimRunner, SimWorld

logger = logging.getLogger("simulate")


def pylon_square(size: float, per_side: int) -> list[tuple[float, float]]:
    """Pylons evenly spaced on the border of a square centered at the origin."""
    half = size / 2.0
    step = size / per_side
    pylons = []
    for i in range(per_side):
        offset = -half + i * step
        pylons.extend([
            (offset, -half),
            (half, offset),
            (-offset, half),
            (-half, -offset),
        ])
    return pylons


def main():
    parser = argparse.ArgumentParser(description="Simulate pylon mower units")
    parser.add_argument("-n", "--units", type=int, default=1, help="Number of units (default: 1)")
    parser.add_argument("--duration", type=float, default=120.0, help="Simulated seconds (default: 120)")
    parser.add_argument("--dt", type=float, default=0.1, help="Time step in seconds (default: 0.1)")
    parser.add_argument("--size", type=float, default=6.0, help="Pylon square side in meters (default: 6)")
    parser.add_argument("--mode", choices=[m.value for m in OperatingMode], default="mow", help="Operating mode")
    parser.add_argument("--loss", type=float, default=0.0, help="Swarm datagram loss rate 0-1 (default: 0)")
    parser.add_argument("--seed", type=int, default=0, help="Random seed (default: 0)")
    parser.add_argument("--animal", type=str, default=None, help="Spawn a walking animal or person class")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if not 1 <= args.units <= 249:
        parser.error("Number of units must be in 1..249")

    objects = []
    if args.animal:
        label = ObjectClass.parse(args.animal)
        if label is None:
            parser.error(f"Unknown class: {args.animal}")
        objects.append(SimObject(label, (-4.0, 2.0), waypoints=[(4.0, 2.0), (-4.0, 2.0)], speed=0.5, loop=True))

    world = SimWorld(pylons=pylon_square(args.size, per_side=4), objects=objects)

    mode = OperatingMode(args.mode)
    configs = [
        MowerConfig.for_simulation(unit_id=i + 1, mode=mode).with_overrides(
            swarm=SwarmConfig(enabled=args.units > 1),
        )
        for i in range(args.units)
    ]

    with SimRunner(
        world,
        configs,
        dt=args.dt,
        seed=args.seed,
        loss_rate=args.loss,
        notification_transport=LoggingNotifyTransport(),
    ) as sim:
        sim.run(args.duration)

        print("=" * 60)
        print(f"SIMULATION SUMMARY ({args.duration:.0f}s, {args.units} unit(s))")
        print("=" * 60)
        for unit_id, mower in sim.mowers.items():
            unit = world.units[unit_id]
            turns = sum(
                count for (_, new), count in mower.behavior.transition_counts.items() if new == Behavior.TURNING
            )
            print(
                f"Unit {unit_id}: {mower.current_behavior.value:<15} "
                f"pos=({unit.x:+.1f}, {unit.y:+.1f}) travelled={unit.distance_travelled:.1f} m "
                f"turns={turns} battery={unit.battery_percent:.0f}%"
            )
            if mower.behavior.fault_history:
                for event in mower.behavior.fault_history:
                    print(f"    fault {event.fault_type.value} at {event.timestamp:.1f}s: {event.details}")
            if mower.notifier is not None:
                print(f"    notifications: {mower.notifier.stats()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
