"""Jinja2 template rendering for generated configuration files."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
)


class TemplateEngine:
    """Render bampctl templates, letting an override directory shadow built-ins."""

    def __init__(self, loader: BaseLoader) -> None:
        """Create the Jinja2 environment around *loader*."""
        self.environment = Environment(
            loader=loader,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine searching *override_dir* before the packaged templates."""
        loaders: list[BaseLoader] = []
        if override_dir is not None:
            override = Path(override_dir).expanduser()
            if override.is_dir():
                loaders.append(FileSystemLoader(str(override)))
        loaders.append(PackageLoader("bampctl", "templates"))
        return cls(ChoiceLoader(loaders))

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
        mode: int | None = None,
    ) -> bool:
        """Render into *destination*; return ``True`` when the file changed."""
        content = self.render_to_string(template_name, context)
        return write_if_changed(destination, content, mode=mode)


def write_if_changed(destination: Path, content: str, *, mode: int | None = None) -> bool:
    """Atomically write *content* unless *destination* already holds it."""
    if destination.exists():
        current = destination.read_text(encoding="utf-8", errors="surrogateescape")
        if current == content:
            if mode is not None and (destination.stat().st_mode & 0o777) != mode:
                os.chmod(destination, mode)
            return False
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8", errors="surrogateescape") as handle:
            handle.write(content)
        os.chmod(tmp_path, 0o644 if mode is None else mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "write_if_changed"]
