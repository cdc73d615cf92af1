"""Two-way sync between Markdown task lists and Google Tasks."""

__version__ = "0.4.0"
