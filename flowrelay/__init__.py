"""flowrelay: Durable orchestration of remote automation workflows."""

from .contracts import GraphDefinition, GraphEdge, GraphNode, RunRecord, RunStatus
from .nodes import NodeDispatcher
from .persistence import get_repository
from .providers import get_provider
from .runner import OrchestratorRunner
from .service import ConnectionService, OrchestratorService

__version__ = "0.1.0"
__all__ = [
    "ConnectionService",
    "GraphDefinition",
    "GraphEdge",
    "GraphNode",
    "NodeDispatcher",
    "OrchestratorRunner",
    "OrchestratorService",
    "RunRecord",
    "RunStatus",
    "get_provider",
    "get_repository",
]
