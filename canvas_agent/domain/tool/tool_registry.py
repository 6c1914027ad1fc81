from typing import Any, Dict, Iterable, List, Optional

import structlog

from .action_adapter import ActionDefinition


logger = structlog.get_logger(__name__)


class ToolRegistry:
    """Catalog of actions available to the model for one run.

    The catalog, including which actions mutate domain state, is fixed once
    loaded from the adapter.
    """

    def __init__(self, definitions: Optional[Iterable[ActionDefinition]] = None):
        self.tools: Dict[str, ActionDefinition] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        self.local_tools: Dict[str, ActionDefinition] = {}

        for definition in definitions or []:
            self.register_tool(definition)

    def register_tool(self, definition: ActionDefinition):
        """Register a new tool"""

        if definition.name in self.tools:
            logger.warning("Tool re-registered", tool=definition.name)
            self._uncategorize(definition.name)

        self.tools[definition.name] = definition
        self.tool_categories.setdefault(definition.category, []).append(definition.name)

    def register_local_tool(self, definition: ActionDefinition):
        """Register a tool handled by the loop itself instead of the adapter"""

        self.register_tool(definition)
        self.local_tools[definition.name] = definition

    def is_local(self, name: str) -> bool:
        return name in self.local_tools

    def get_tool(self, name: str) -> Optional[ActionDefinition]:
        return self.tools.get(name)

    def is_mutating(self, name: str) -> bool:
        """Static mutation classification, unknown tools never mutate"""
        definition = self.tools.get(name)
        return bool(definition and definition.mutates)

    def mutating_tools(self) -> List[str]:
        return [name for name, definition in self.tools.items() if definition.mutates]

    def get_available_tools(self) -> List[ActionDefinition]:
        """Get all available tools"""
        return list(self.tools.values())

    def get_tools_by_category(self, category: str) -> List[ActionDefinition]:
        return [self.tools[name] for name in self.tool_categories.get(category, [])]

    def describe(self) -> str:
        """One line per tool, used to account for the catalog in the prompt budget"""
        lines = []
        for definition in self.tools.values():
            marker = " (mutates)" if definition.mutates else ""
            lines.append(f"- {definition.name}{marker}: {definition.description}")
        return "\n".join(lines)

    def get_tool_info(self, name: str) -> Dict[str, Any]:
        definition = self.tools.get(name)
        if definition is None:
            return {}
        return definition.model_dump()

    def _uncategorize(self, name: str):
        for names in self.tool_categories.values():
            if name in names:
                names.remove(name)
