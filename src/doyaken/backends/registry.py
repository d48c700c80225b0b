from __future__ import annotations

import shutil
from collections.abc import Sequence
from dataclasses import dataclass

from doyaken.errors import ConfigError


@dataclass(slots=True, frozen=True)
class AgentSpec:
    """How to launch one coding-agent CLI unattended.

    ``prompt_flag`` is empty when the CLI takes the prompt as a trailing
    positional argument. ``fallback_chain`` lists models from most to least
    capable; its last entry is the floor, and models in ``below_floor`` are
    already cheaper than the floor so they never fall back.
    """

    name: str
    command: tuple[str, ...]
    default_model: str
    models: tuple[str, ...]
    autonomy_flags: tuple[str, ...] = ()
    model_flag: str = "--model"
    prompt_flag: str = "-p"
    verbose_flags: tuple[str, ...] = ()
    fallback_chain: tuple[str, ...] = ()
    below_floor: tuple[str, ...] = ()
    install_hint: tuple[str, ...] = ()

    @property
    def executable(self) -> str:
        return self.command[0]

    def installed(self) -> bool:
        return shutil.which(self.executable) is not None

    def supports_model(self, model: str) -> bool:
        return model in self.models

    def build_command(
        self,
        prompt: str,
        model: str | None = None,
        *,
        verbose: bool = False,
        extra_args: Sequence[str] = (),
    ) -> list[str]:
        command = [*self.command, *self.autonomy_flags]
        chosen = model or self.default_model
        if chosen:
            command.extend([self.model_flag, chosen])
        if verbose:
            command.extend(self.verbose_flags)
        command.extend(extra_args)
        if self.prompt_flag:
            command.extend([self.prompt_flag, prompt])
        else:
            command.append(prompt)
        return command

    def next_fallback(self, current: str) -> str | None:
        """Return the next cheaper model, or None when ``current`` is already at the floor."""
        if not self.fallback_chain:
            return None
        floor = self.fallback_chain[-1]
        if current == floor or current in self.below_floor:
            return None
        if current in self.fallback_chain:
            return self.fallback_chain[self.fallback_chain.index(current) + 1]
        return floor


AGENTS: dict[str, AgentSpec] = {
    "claude": AgentSpec(
        name="claude",
        command=("claude",),
        default_model="opus",
        models=(
            "opus",
            "sonnet",
            "haiku",
            "claude-opus-4",
            "claude-sonnet-4",
            "claude-sonnet-4.5",
        ),
        autonomy_flags=("--dangerously-skip-permissions", "--permission-mode", "bypassPermissions"),
        verbose_flags=("--output-format", "stream-json", "--verbose"),
        fallback_chain=("opus", "sonnet"),
        below_floor=("haiku",),
        install_hint=("npm install -g @anthropic-ai/claude-code",),
    ),
    "cursor": AgentSpec(
        name="cursor",
        command=("cursor", "agent"),
        default_model="claude-sonnet-4",
        models=("claude-sonnet-4", "claude-sonnet-4.5", "gpt-4o", "gpt-4o-mini"),
        install_hint=("curl https://cursor.com/install -fsS | bash",),
    ),
    "codex": AgentSpec(
        name="codex",
        command=("codex", "exec"),
        default_model="gpt-5",
        models=("gpt-5", "o3", "o4-mini", "gpt-5-codex"),
        autonomy_flags=("--dangerously-bypass-approvals-and-sandbox",),
        model_flag="-m",
        prompt_flag="",
        verbose_flags=("--verbose",),
        fallback_chain=("gpt-5", "o4-mini"),
        install_hint=("npm install -g @openai/codex", "brew install --cask codex"),
    ),
    "gemini": AgentSpec(
        name="gemini",
        command=("gemini",),
        default_model="gemini-2.5-pro",
        models=("gemini-2.5-pro", "gemini-2.5-flash", "gemini-3-pro"),
        autonomy_flags=("--yolo",),
        model_flag="-m",
        verbose_flags=("--verbose",),
        fallback_chain=("gemini-2.5-pro", "gemini-2.5-flash"),
        install_hint=("npm install -g @google/gemini-cli",),
    ),
    "copilot": AgentSpec(
        name="copilot",
        command=("copilot",),
        default_model="claude-sonnet-4.5",
        models=("claude-sonnet-4.5", "claude-sonnet-4", "gpt-5"),
        autonomy_flags=("--allow-all-tools", "--allow-all-paths"),
        model_flag="-m",
        verbose_flags=("--verbose",),
        fallback_chain=("claude-sonnet-4.5", "claude-sonnet-4"),
        install_hint=("npm install -g @github/copilot",),
    ),
    "opencode": AgentSpec(
        name="opencode",
        command=("opencode", "run"),
        default_model="claude-sonnet-4",
        models=("claude-sonnet-4", "claude-opus-4", "gpt-5", "gemini-2.5-pro"),
        autonomy_flags=("--auto-approve",),
        prompt_flag="",
        verbose_flags=("--print-logs",),
        fallback_chain=("claude-opus-4", "claude-sonnet-4"),
        install_hint=(
            "npm install -g opencode-ai@latest",
            "curl -fsSL https://opencode.ai/install | bash",
        ),
    ),
}


def agent_names() -> list[str]:
    return list(AGENTS)


def get_agent(name: str) -> AgentSpec:
    try:
        return AGENTS[name]
    except KeyError as exc:
        raise ConfigError(
            f"Unknown agent '{name}'. Supported agents: {', '.join(AGENTS)}"
        ) from exc


def validate_agent(name: str, model: str | None = None) -> AgentSpec:
    spec = get_agent(name)
    if model and not spec.supports_model(model):
        raise ConfigError(
            f"Model '{model}' is not supported by agent '{name}'. "
            f"Supported models: {', '.join(spec.models)}"
        )
    return spec
