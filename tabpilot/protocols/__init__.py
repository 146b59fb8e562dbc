"""
Протоколы внешних инструментов.

- MCP: JSON-RPC 2.0 поверх Streamable HTTP, сервер отдаёт набор инструментов
- A2A: агент принимает задачу на естественном языке одним POST запросом
"""

from .a2a import A2ARegistry
from .mcp import ConnectionState, MCPManager
from .transport import StreamableHttpTransport

__all__ = [
    "A2ARegistry",
    "ConnectionState",
    "MCPManager",
    "StreamableHttpTransport",
]
