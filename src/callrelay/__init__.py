"""
Call relay package.

Keep imports lightweight so pure modules like `src.callrelay.segmenter` can be used
without requiring the full runtime dependency set (e.g., dotenv) at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.callrelay.config import Config

__version__ = "16.1.0"

__all__ = ["Config", "get_config", "__version__"]


def __getattr__(name: str) -> Any:
    if name in ("Config", "get_config"):
        from src.callrelay.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    raise AttributeError(name)
