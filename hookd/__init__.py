"""hookd - post-edit lint/test hooks without overlapping runs."""

__version__ = "0.3.0"
