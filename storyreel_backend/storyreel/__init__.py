"""Narrated story-video production: story text in, subtitled MP4 out."""

__version__ = "0.1.0"
