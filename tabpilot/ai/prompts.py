"""
Системный промпт для цикла tool calling.

Промпт собирается на каждый запуск: зависит от того, включены ли
инструменты браузера и какие MCP / A2A инструменты подключены.
"""

_RULE = "━" * 62

BASE_WITH_BROWSER = (
    "You are a helpful AI assistant with browser automation capabilities. "
    "You can navigate to websites, click elements, type text, scroll pages, "
    "and take screenshots."
)

BASE_WITHOUT_BROWSER = (
    "You are a helpful AI assistant. Browser automation tools are NOT available "
    "in this mode - you cannot navigate, click, type, or take screenshots. "
    "When the user asks for a browser action, tell them to do it manually."
)

BROWSER_GUIDELINES = f"""{_RULE}
TOOL USAGE GUIDELINES
{_RULE}
getPageContext: ALWAYS call first to understand page structure
screenshot: Use when you need visual understanding or coordinates
clickElement: Preferred method - works with selectors or text
click: Last resort - requires a screenshot first; convert image coordinates
       with the scale factors reported alongside that screenshot
type: For inputs
scroll: To bring content into view
pressKey: For special keys like Enter, Tab, Escape
navigate: To change pages. CHECK FOR ERRORS in the result!"""

PROTOCOL_TOOLS_SECTION = """{rule}
SPECIALIZED TOOLS (MCP servers and A2A agents)
{rule}
Read each tool's description. When one matches the user's intent, call it
DIRECTLY - do not navigate or take screenshots first.

{tools}"""

FORMAT_RULES = f"""{_RULE}
TOOL CALLING FORMAT
{_RULE}
Tools are called only through the API tool_use mechanism.
NEVER write XML-like markup such as <function_calls>, <invoke>, <parameter>,
<tool_call> or <function> in your text, and never write "[Executing: ...]".
Describe what you are doing in natural language."""


def build_system_prompt(
    browser_tools_enabled: bool = True,
    protocol_tools: str = ""
) -> str:
    """
    Собирает системный промпт.

    Args:
        browser_tools_enabled: Доступны ли инструменты браузера
        protocol_tools: Список MCP/A2A инструментов (по строке на инструмент)

    Returns:
        str: Системный промпт
    """
    sections = [BASE_WITH_BROWSER if browser_tools_enabled else BASE_WITHOUT_BROWSER]

    if protocol_tools.strip():
        sections.append(PROTOCOL_TOOLS_SECTION.format(rule=_RULE, tools=protocol_tools))

    if browser_tools_enabled:
        sections.append(BROWSER_GUIDELINES)

    sections.append(FORMAT_RULES)
    return "\n\n".join(sections)
