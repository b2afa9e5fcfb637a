from typing import Dict, List, Any, Optional, Callable
from dataclasses import dataclass, field


@dataclass
class Tool:
    """A callable the model can request by name"""
    name: str
    handler: Callable[..., Any]
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    requires_approval: bool = False
    category: str = "general"
    timeout: Optional[float] = None
    background: bool = False

    def spec(self) -> Dict[str, Any]:
        """What the model sees"""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters
        }


class ToolRegistry:
    """Registry for managing available tools"""

    def __init__(self, tools: Optional[List[Tool]] = None):
        self.tools: Dict[str, Tool] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> Tool:
        """Register a tool, replacing any tool with the same name"""

        if tool.name in self.tools:
            self.unregister(tool.name)

        self.tools[tool.name] = tool
        self.tool_categories.setdefault(tool.category, []).append(tool.name)
        return tool

    def tool(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        requires_approval: bool = False,
        category: str = "general",
        timeout: Optional[float] = None,
        background: bool = False
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register()"""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(Tool(
                name=name or func.__name__,
                handler=func,
                description=description or (func.__doc__ or "").strip(),
                parameters=parameters or {"type": "object", "properties": {}},
                requires_approval=requires_approval,
                category=category,
                timeout=timeout,
                background=background
            ))
            return func

        return decorator

    def unregister(self, name: str) -> bool:
        tool = self.tools.pop(name, None)
        if tool is None:
            return False
        names = self.tool_categories.get(tool.category, [])
        if name in names:
            names.remove(name)
        return True

    def get(self, name: str) -> Optional[Tool]:
        return self.tools.get(name)

    def has(self, name: str) -> bool:
        return name in self.tools

    def list_tools(self) -> List[Tool]:
        return list(self.tools.values())

    def get_tools_by_category(self, category: str) -> List[Tool]:
        return [self.tools[name] for name in self.tool_categories.get(category, []) if name in self.tools]

    def search_tools(self, query: str) -> List[Tool]:
        """Search tools by name or description"""

        query_lower = query.lower()
        return [
            tool for tool in self.tools.values()
            if query_lower in tool.name.lower() or query_lower in tool.description.lower()
        ]

    def specs(self) -> List[Dict[str, Any]]:
        return [tool.spec() for tool in self.tools.values()]
