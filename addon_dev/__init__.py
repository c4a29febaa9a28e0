"""
addon-dev CLI package.

``addon-dev serve`` runs a live-reloading development session and
``addon-dev test`` runs the plugin's mocha specs inside the target. Use
``python -m addon_dev`` or the ``addon-dev`` console script.
"""

from __future__ import annotations

from .cli import main

__all__ = ["main"]
__version__ = "0.1.0"
