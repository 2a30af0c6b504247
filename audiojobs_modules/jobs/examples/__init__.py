"""Example service overrides for the job pipeline."""

from .simple_overrides import analyze, build, transcode

__all__ = ["analyze", "build", "transcode"]
