"""Workload patterns for outbox-sim."""

from __future__ import annotations

from outbox_sim.scenarios.base import Scenario, ScenarioInfo, track_queue
from outbox_sim.scenarios.mixed import MixedScenario
from outbox_sim.scenarios.single_thread import SingleThreadScenario

SCENARIOS: dict[str, type[Scenario]] = {
    cls.info.name: cls for cls in (MixedScenario, SingleThreadScenario)
}


def get_scenario(name: str) -> Scenario:
    """Instantiate the scenario registered as ``name``."""
    try:
        return SCENARIOS[name]()
    except KeyError:
        raise ValueError(f"Unknown scenario: {name}. Available: {', '.join(SCENARIOS)}") from None


def list_scenarios() -> list[ScenarioInfo]:
    return [cls.info for cls in SCENARIOS.values()]


__all__ = [
    "SCENARIOS",
    "Scenario",
    "ScenarioInfo",
    "get_scenario",
    "list_scenarios",
    "track_queue",
]
