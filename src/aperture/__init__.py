"""Aperture Daily: leveled reading articles from news feeds and vocabulary."""

__version__ = "0.1.0"
