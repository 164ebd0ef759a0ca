from dataclasses import dataclass


@dataclass
class AgentConfig:
    max_iterations: int = 10
    system_prompt: str = ""
    max_tool_result_chars: int = 40_000
