"""Jinja2 template engine for unit files and proxy routes.

Built-in templates live next to this module. An override directory (by
default ``/etc/sitectl/templates``) can shadow any of them by providing a file
at the same relative path.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent


@dataclass(slots=True)
class TemplateEngine:
    """Render templates to strings or atomically to files."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(FileSystemLoader(str(BUILTIN_TEMPLATES_DIR)))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,  # noqa: S701 - renders config files, not HTML
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        template = self.environment.get_template(template_name)
        return template.render(**dict(context))

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination*; return ``True`` when the file changed."""
        content = self.render_to_string(template_name, context)
        return write_atomic(destination, content, mode=mode)


def write_atomic(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Replace *destination* with *content* via a temp file in the same directory.

    Returns ``False`` without touching the file when the content is already
    identical. A failure before the final ``os.replace`` leaves the previous
    file untouched.
    """
    if destination.exists():
        try:
            if destination.read_text(encoding="utf-8") == content:
                if (destination.stat().st_mode & 0o777) != mode:
                    destination.chmod(mode)
                return False
        except UnicodeDecodeError:
            pass

    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["BUILTIN_TEMPLATES_DIR", "TemplateEngine", "write_atomic"]
