"""
labhand - Experiment worker agent.

Advertise capacity, run experiments, report results back to the lab.
"""

from labhand.ledger import CapacityLedger
from labhand.lifecycle import Experiment, ExperimentLifecycle

__version__ = "0.3.0"
__all__ = ["CapacityLedger", "Experiment", "ExperimentLifecycle", "__version__"]
