"""Render template sources into an instance directory."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import Environment, StrictUndefined, TemplateError as JinjaTemplateError

from ..filesystem import FileStore
from .sources import TemplateError, TemplateSource
from .variables import TemplateVariables

TEMPLATE_SUFFIX = ".j2"
COMMENT_START = "{##"
COMMENT_END = "##}"


def _build_environment() -> Environment:
    # Values land in Dockerfiles and YAML, never HTML: substitution is verbatim.
    # Comments use ``{## ##}`` so shell such as ``${#name}`` passes through.
    return Environment(
        autoescape=False,
        comment_start_string=COMMENT_START,
        comment_end_string=COMMENT_END,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )


@dataclass(slots=True)
class TemplateEngine:
    """Materialise template files with strict variable substitution."""

    environment: Environment = field(default_factory=_build_environment)

    def render_to_string(self, content: str, variables: TemplateVariables) -> str:
        """Render template *content* against *variables*."""
        try:
            return self.environment.from_string(content).render(variables.as_context())
        except JinjaTemplateError as exc:
            raise TemplateError(str(exc)) from exc

    def render(
        self,
        template_name: str,
        target_dir: Path,
        variables: TemplateVariables,
        source: TemplateSource,
        files: FileStore,
    ) -> list[Path]:
        """Write *template_name* from *source* below *target_dir*.

        ``*.j2`` files are rendered and written without the suffix; any other
        file is copied verbatim. Returns the written paths in source order.
        """
        written: list[Path] = []
        for template_file in source.template_files(template_name):
            relative = template_file.relative_path
            if relative.endswith(TEMPLATE_SUFFIX):
                try:
                    content = self.render_to_string(template_file.content, variables)
                except TemplateError as exc:
                    raise TemplateError(f"Failed to render {relative}: {exc}") from exc
                destination = target_dir / relative[: -len(TEMPLATE_SUFFIX)]
            else:
                content = template_file.content
                destination = target_dir / relative
            files.ensure_directory(destination.parent)
            files.write_file(destination, content)
            written.append(destination)
        return written


__all__ = ["TEMPLATE_SUFFIX", "TemplateEngine"]
