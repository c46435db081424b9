"""Jinja2 template rendering for managed configuration files.

Built-in templates live next to this module. An override directory (see the
``templates_dir`` setting) shadows them file by file. Rendering uses
``StrictUndefined`` so a missing variable is an error rather than an empty
string, and it is pure: the same template and context always produce the
same text.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent


class TemplateError(RuntimeError):
    """Raised when a template cannot be found or rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render templates from the override directory or the built-in set."""

    environment: Environment
    override_dir: Path | None = None

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine searching *override_dir* before built-in templates."""
        loaders: list[FileSystemLoader] = []
        resolved: Path | None = None
        if override_dir is not None:
            resolved = Path(override_dir).expanduser()
            if resolved.is_dir():
                loaders.append(FileSystemLoader(str(resolved)))
        loaders.append(FileSystemLoader(str(BUILTIN_TEMPLATES_DIR)))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        return cls(environment=environment, override_dir=resolved)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**dict(context))
        except TemplateNotFound as exc:
            raise TemplateError(f"Template '{template_name}' not found.") from exc
        except TemplateSyntaxError as exc:
            raise TemplateError(
                f"Template '{template_name}' has a syntax error on line {exc.lineno}: "
                f"{exc.message}"
            ) from exc
        except UndefinedError as exc:
            raise TemplateError(f"Template '{template_name}': {exc.message}") from exc


__all__ = ["BUILTIN_TEMPLATES_DIR", "TemplateEngine", "TemplateError"]
