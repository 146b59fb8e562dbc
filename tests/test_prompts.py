from tabpilot.ai.prompts import build_system_prompt


def test_browser_prompt_sections():
    prompt = build_system_prompt(browser_tools_enabled=True)

    assert prompt.startswith("You are a helpful AI assistant with browser automation")
    assert "TOOL USAGE GUIDELINES" in prompt
    assert "SPECIALIZED TOOLS" not in prompt
    assert "NEVER write XML-like markup" in prompt


def test_protocol_tools_listed_before_browser_guidelines():
    prompt = build_system_prompt(True, "  - get_weather: Current weather")

    assert prompt.index("SPECIALIZED TOOLS") < prompt.index("TOOL USAGE GUIDELINES")
    assert "  - get_weather: Current weather" in prompt


def test_without_browser():
    prompt = build_system_prompt(browser_tools_enabled=False, protocol_tools="   ")

    assert "NOT available" in prompt
    assert "TOOL USAGE GUIDELINES" not in prompt
    assert "SPECIALIZED TOOLS" not in prompt
