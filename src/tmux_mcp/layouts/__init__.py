"""Session layout models and loader exports."""

from .loader import LayoutLoadError, LayoutLoader, load_layouts
from .models import DEFAULT_LAYOUT, SessionLayout, WindowSpec

__all__ = [
    "DEFAULT_LAYOUT",
    "LayoutLoadError",
    "LayoutLoader",
    "SessionLayout",
    "WindowSpec",
    "load_layouts",
]
