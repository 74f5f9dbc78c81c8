"""charterbook: availability and booking policy service for yacht charters."""

__version__ = "0.3.0"
