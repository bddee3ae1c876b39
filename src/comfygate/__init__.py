"""Comfygate - bind inputs into ComfyUI workflows and stream every artifact back."""

__version__ = "0.3.0"

from comfygate.core.config import ComfygateConfig, config

__all__ = [
    "ComfygateConfig",
    "config",
]
