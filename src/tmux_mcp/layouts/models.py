"""Layout models describing the window topology of a managed session."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def _check_name(value: str, kind: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{kind} must not be empty")
    if any(char in normalized for char in ".:"):
        raise ValueError(f"{kind} must not contain '.' or ':'")
    return normalized


class WindowSpec(BaseModel):
    """A named window that every session using the layout must carry."""

    name: str = Field(..., description="tmux window name.")
    start_directory: str | None = Field(
        default=None,
        description="Directory the window's shell starts in; defaults to the layout's.",
    )

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _check_name(value, "Window name")


class SessionLayout(BaseModel):
    """Configuration describing which windows a session is created with.

    The first window is the execution window: wrapped commands and
    responsiveness probes are sent there.
    """

    id: str = Field(..., description="Unique identifier for the layout.")
    description: str = Field(default="", description="Human-friendly summary.")
    start_directory: str | None = Field(
        default=None,
        description="Default start directory; falls back to the server setting.",
    )
    windows: list[WindowSpec] = Field(
        default_factory=lambda: [WindowSpec(name="main")],
        description="Ordered windows; the first one runs commands.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        return _check_name(value, "Layout id")

    @field_validator("windows", mode="before")
    @classmethod
    def _coerce_windows(cls, value: Any):  # type: ignore[override]
        if value is None:
            return [{"name": "main"}]
        if isinstance(value, (list, tuple)):
            return [{"name": item} if isinstance(item, str) else item for item in value]
        raise ValueError("windows must be a sequence of names or window mappings")

    @model_validator(mode="after")
    def _check_windows(self) -> "SessionLayout":
        if not self.windows:
            raise ValueError("A layout needs at least one window")
        names = [window.name for window in self.windows]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate window names in layout '{self.id}'")
        return self

    @property
    def execution_window(self) -> str:
        return self.windows[0].name

    @property
    def window_names(self) -> list[str]:
        return [window.name for window in self.windows]


DEFAULT_LAYOUT = SessionLayout(
    id="default",
    description="Single execution window named 'main'.",
)


__all__ = ["DEFAULT_LAYOUT", "SessionLayout", "WindowSpec"]
