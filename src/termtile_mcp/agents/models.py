"""Agent definitions and orchestrator configuration models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class AgentHooks(BaseModel):
    """Commands bound to the abstract hook points of an agent session."""

    on_start: str = Field(default="", description="Command run when the agent session starts.")
    on_check: str = Field(default="", description="Command run between agent turns.")
    on_end: str = Field(default="", description="Command run when the agent finishes a turn.")


class AgentConfig(BaseModel):
    """Describes a CLI agent that can be spawned into a tmux terminal."""

    command: str = Field(..., description="Executable launched for the agent.")
    args: list[str] = Field(default_factory=list, description="Arguments appended to the command.")
    description: str = Field(default="", description="Human readable summary of the agent.")
    ready_pattern: str = Field(
        default="",
        description="Substring that signals the agent is ready to receive a task.",
    )
    idle_pattern: str = Field(
        default="",
        description="Prompt prefix that signals the agent is waiting for input.",
    )
    env: dict[str, str] = Field(
        default_factory=dict, description="Extra environment variables for the agent process."
    )
    spawn_mode: Literal["", "pane", "window"] = Field(
        default="", description="Spawn as a split pane or in its own terminal window."
    )
    prompt_as_arg: bool = Field(
        default=False, description="Pass the task on the command line instead of typing it."
    )
    prompt_flag: str = Field(
        default="", description="Flag that introduces the task when passed as an argument."
    )
    pipe_task: bool = Field(default=False, description="Pipe the task to the agent's stdin.")
    response_fence: bool = Field(
        default=False, description="Ask the agent to fence its final answer with markers."
    )
    models: list[str] = Field(default_factory=list, description="Known model identifiers.")
    default_model: str = Field(default="", description="Model used when none is requested.")
    model_flag: str = Field(default="--model", description="Flag that selects the model.")
    output_mode: str = Field(
        default="hooks", description="How output is collected: 'hooks', 'fence' or 'terminal'."
    )
    hooks: AgentHooks = Field(default_factory=AgentHooks)
    hook_delivery: str = Field(
        default="", description="Where hook settings go: 'cli_flag', 'project_file' or 'none'."
    )
    hook_settings_flag: str = Field(default="", description="Flag carrying inline hook settings.")
    hook_settings_dir: str = Field(
        default="", description="Project-relative directory holding the hook settings file."
    )
    hook_settings_file: str = Field(default="", description="Hook settings file name.")
    hook_events: dict[str, str] | None = Field(
        default=None, description="Mapping of abstract hook names to native event names."
    )
    hook_entry: dict[str, Any] | None = Field(
        default=None, description="Template for a single native hook entry."
    )
    hook_wrapper: dict[str, Any] | None = Field(
        default=None, description="Template wrapping the rendered events map."
    )
    hook_output: Any | None = Field(
        default=None, description="Template used to format context returned by hook commands."
    )
    hook_response_field: str = Field(
        default="", description="Hook context field carrying the agent's final response."
    )

    @field_validator("command")
    @classmethod
    def _require_command(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent command must not be empty")
        return normalized

    @field_validator("output_mode", "hook_delivery", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("output_mode")
    @classmethod
    def _default_output_mode(cls, value: str) -> str:
        return value or "hooks"

    @field_validator("args", "models", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("args and models must be sequences of strings")

    @field_validator("model_flag", mode="before")
    @classmethod
    def _default_model_flag(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "--model"
        return value


class AgentModeConfig(BaseModel):
    """Behaviour of workspaces dedicated to agents."""

    protect_slot_zero: bool = Field(
        default=True,
        description="Refuse to kill slot 0 (usually the orchestrating agent) in agent-mode workspaces.",
    )


class TermtileConfig(BaseModel):
    """Fully resolved orchestrator configuration."""

    agents: dict[str, AgentConfig] = Field(default_factory=dict)
    agent_mode: AgentModeConfig = Field(default_factory=AgentModeConfig)
    terminal_spawn_commands: dict[str, str] = Field(
        default_factory=dict,
        description="Terminal class to launch template with {{dir}} and {{cmd}} placeholders.",
    )
    preferred_terminal: str = Field(default="", description="Terminal class used for windows.")

    @field_validator("terminal_spawn_commands")
    @classmethod
    def _validate_spawn_commands(cls, value: dict[str, str]) -> dict[str, str]:
        for terminal_class, template in value.items():
            if not terminal_class.strip():
                raise ValueError("terminal_spawn_commands contains an empty class name")
            if not template.strip():
                raise ValueError(f"spawn command for {terminal_class!r} must not be empty")
        return value

    def lookup_spawn_template(self, terminal_class: str) -> str | None:
        """Find a launch template by terminal class, exact match first."""

        templates = self.terminal_spawn_commands
        if terminal_class in templates:
            return templates[terminal_class]
        lowered = terminal_class.lower()
        if lowered in templates:
            return templates[lowered]
        for key, template in templates.items():
            if key.lower() == lowered:
                return template
        return None


__all__ = ["AgentConfig", "AgentHooks", "AgentModeConfig", "TermtileConfig"]
