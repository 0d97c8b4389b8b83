"""
Tool Catalog

Fixed set of tool definitions offered to the model. Tools are never executed
by the runtime; see ``generation.GenerationPipeline``.
"""

from typing import List, Optional

from .types import ToolDefinition


class StaticToolProvider:
    def __init__(self, tools: Optional[List[ToolDefinition]] = None):
        self.tools = list(tools or [])

    def register(self, tool: ToolDefinition):
        self.tools = [t for t in self.tools if t.name != tool.name] + [tool]

    async def get_tools(self) -> List[ToolDefinition]:
        return list(self.tools)
