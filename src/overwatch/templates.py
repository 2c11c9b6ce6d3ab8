"""Jinja2 template rendering for generated tenant files."""
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined

from .envfile import write_text_atomic

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent / "resources" / "templates"


class TemplateEngine:
    """Render packaged templates, letting an operator directory shadow them."""

    def __init__(self, search_paths: list[Path]) -> None:
        """Create an engine searching *search_paths* in order."""
        self.search_paths = search_paths
        self.env = Environment(
            loader=ChoiceLoader([FileSystemLoader(str(path)) for path in search_paths]),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        paths: list[Path] = []
        if override_dir is not None and override_dir.is_dir():
            paths.append(override_dir)
        paths.append(BUILTIN_TEMPLATES_DIR)
        return cls(paths)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        template = self.env.get_template(template_name)
        return template.render(**context)

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o640,
    ) -> bool:
        """Render *template_name* to *destination*.

        Returns ``False`` without touching the file when its content is
        already identical.
        """
        content = self.render_to_string(template_name, context)
        if destination.is_file() and not destination.is_symlink():
            if destination.read_text(encoding="utf-8") == content:
                return False
        if destination.is_symlink():
            destination.unlink()
        destination.parent.mkdir(parents=True, exist_ok=True)
        write_text_atomic(destination, content, mode=mode)
        return True


__all__ = ["BUILTIN_TEMPLATES_DIR", "TemplateEngine"]
