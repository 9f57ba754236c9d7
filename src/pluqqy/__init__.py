"""pluqqy: a local library of LLM prompt components composed into Markdown."""

__version__ = "0.1.0"
