"""
Job Lifecycle Orchestrator.

Coordinates a marketplace job from price quotation through worker
assignment, execution, escrowed payment and review collection, as a
checkpointed process that survives restarts and long human waits.
"""

__version__ = "0.1.0"

from .config import OrchestratorConfig, load_config
from .clock import ManualClock, SystemClock
from .workflows.orchestrator import JobOrchestrator

__all__ = ["OrchestratorConfig", "load_config", "ManualClock", "SystemClock", "JobOrchestrator", "__version__"]
