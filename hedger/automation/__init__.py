"""Strategy automation: the control loop and the strategies it drives."""

from hedger.automation.engine import AutomationEngine, AutomationError, EngineState
from hedger.automation.strategies import HedgeStrategy, Strategy, build_strategy

__all__ = [
    "AutomationEngine",
    "AutomationError",
    "EngineState",
    "HedgeStrategy",
    "Strategy",
    "build_strategy",
]
