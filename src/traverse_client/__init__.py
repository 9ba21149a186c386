"""Client runtime for the Traverse analysis server."""

from traverse_client.exceptions import TraverseError
from traverse_client.orchestrator import AnalysisCommand, CommandOrchestrator, build_orchestrator

__all__ = ["__version__", "AnalysisCommand", "CommandOrchestrator", "TraverseError", "build_orchestrator"]

__version__ = "0.1.0"
