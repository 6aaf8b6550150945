"""HTTP surface for the analysis pipeline."""

from cap.api.server import create_app

__all__ = ["create_app"]
