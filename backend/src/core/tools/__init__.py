"""
DeployForge Tools - External Tool Dispatch
==========================================

Components:
- ToolDispatcher: Backend registry, live calls and fallback routing
- HttpToolBackend: JSON-RPC tool server client
- FallbackRegistry: Static stubs for read-only operations
- UsageLedger: Sanitized call history and statistics
"""

from src.core.tools.backends import HttpToolBackend, ToolBackend, ToolBackendError
from src.core.tools.dispatcher import ToolDispatcher, ToolResult, build_tool_dispatcher
from src.core.tools.fallbacks import FallbackRegistry
from src.core.tools.usage import UsageLedger

__all__ = [
    "ToolDispatcher",
    "ToolResult",
    "build_tool_dispatcher",
    "ToolBackend",
    "ToolBackendError",
    "HttpToolBackend",
    "FallbackRegistry",
    "UsageLedger",
]
