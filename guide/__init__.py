"""AI guide package (Gemini chat and photo checks)."""

from .routes import guide_bp

__all__ = ["guide_bp"]
