from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from datetime import datetime
from importlib import resources
from pathlib import Path

from doyaken.errors import PromptNotFoundError

logger = logging.getLogger("doyaken.prompts")

INCLUDE_PATTERN = re.compile(r"\{\{include:([^}]+)\}\}")
VARIABLE_PATTERN = re.compile(r"\{\{([A-Z_]+)\}\}")
MAX_INCLUDE_DEPTH = 5
CONTEXT_PLACEHOLDER = "ACCUMULATED_CONTEXT"


class PromptLibrary:
    """Resolves prompt templates from the project, the user's global dir, then the package."""

    def __init__(self, project_dir: Path | None = None, global_dir: Path | None = None) -> None:
        self.project_dir = project_dir
        self.global_dir = global_dir

    def _read(self, relative: str) -> str | None:
        relative = relative.strip().lstrip("/")
        if not relative or ".." in Path(relative).parts:
            return None
        for base in (self.project_dir, self.global_dir):
            if base is None:
                continue
            candidate = base / relative
            if candidate.is_file():
                return candidate.read_text(encoding="utf-8")
        try:
            return resources.files("doyaken.prompts").joinpath(relative).read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None

    def exists(self, relative: str) -> bool:
        return self._read(relative) is not None

    def load(self, relative: str) -> str:
        content = self._read(relative)
        if content is None:
            raise PromptNotFoundError(f"Prompt template not found: {relative}")
        return self.expand_includes(content)

    def expand_includes(self, content: str, depth: int = MAX_INCLUDE_DEPTH) -> str:
        if depth <= 0:
            return content

        def _replace(match: re.Match[str]) -> str:
            include_path = match.group(1).strip()
            included = self._read(include_path)
            if included is None:
                logger.warning("Include file not found: %s", include_path)
                return match.group(0)
            return self.expand_includes(included.rstrip("\n"), depth - 1)

        return INCLUDE_PATTERN.sub(_replace, content)

    def render(
        self,
        relative: str,
        variables: Mapping[str, str],
        *,
        context: str = "",
    ) -> str:
        """Load ``relative`` and substitute ``{{NAME}}`` variables.

        Unknown variables are left as written. When ``context`` is non-empty
        and the template has no ``{{ACCUMULATED_CONTEXT}}`` placeholder, it is
        appended as a trailing section.
        """
        template = self.load(relative)
        values = dict(variables)
        values.setdefault("TIMESTAMP", datetime.now().strftime("%Y-%m-%d %H:%M"))
        values[CONTEXT_PLACEHOLDER] = context
        has_context_slot = f"{{{{{CONTEXT_PLACEHOLDER}}}}}" in template

        rendered = VARIABLE_PATTERN.sub(
            lambda match: values.get(match.group(1), match.group(0)), template
        )
        if context and not has_context_slot:
            rendered = (
                f"{rendered.rstrip()}\n\n## Previous verification failures\n\n"
                "Fix these before doing anything else:\n\n"
                f"{context}\n"
            )
        return rendered
