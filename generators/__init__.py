from .scenarios import (
    ScenarioCatalog,
    ScenarioDefinition,
    load_scenarios,
)
from .vitals_simulator import (
    VitalsSimulator,
    simulate_scenario_stream,
)

__all__ = [
    "ScenarioCatalog",
    "ScenarioDefinition",
    "load_scenarios",
    "VitalsSimulator",
    "simulate_scenario_stream",
]
