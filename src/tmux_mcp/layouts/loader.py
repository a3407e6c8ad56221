"""Layout loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import DEFAULT_LAYOUT, SessionLayout


class LayoutLoadError(RuntimeError):
    """Raised when one or more layout files cannot be parsed."""


class LayoutLoader:
    """Loads session layouts from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        """Return the normalized search paths."""

        return list(self._search_paths)

    def load_all(self) -> dict[str, SessionLayout]:
        """Load layouts from all configured search paths.

        The built-in ``default`` layout is always present. Later search paths
        override earlier ones (and the built-in) when layout ids collide.
        """

        layouts: dict[str, SessionLayout] = {DEFAULT_LAYOUT.id: DEFAULT_LAYOUT}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    layout = SessionLayout.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Layout validation error in {path}: {exc}")
                    continue

                layouts[layout.id] = layout

        if errors:
            raise LayoutLoadError("; ".join(errors))

        return layouts

    def get(self, layout_id: str) -> SessionLayout:
        """Return a single layout by id."""

        layouts = self.load_all()
        try:
            return layouts[layout_id]
        except KeyError as exc:
            raise LayoutLoadError(f"Layout '{layout_id}' not found in search paths") from exc


def load_layouts(search_paths: Iterable[Path] | None = None) -> dict[str, SessionLayout]:
    """Convenience wrapper for loading layouts from the provided paths."""

    loader = LayoutLoader(search_paths)
    return loader.load_all()


__all__ = ["LayoutLoadError", "LayoutLoader", "SessionLayout", "load_layouts"]
