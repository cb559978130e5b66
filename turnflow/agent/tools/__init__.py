from turnflow.agent.tools.base import AgentTool
from turnflow.agent.tools.registry import ToolRegistry, create_default_tools
from turnflow.agent.tools.workspace import ListFilesTool, ReadFileTool

__all__ = [
    "AgentTool",
    "ListFilesTool",
    "ReadFileTool",
    "ToolRegistry",
    "create_default_tools",
]
