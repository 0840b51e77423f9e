"""Task automation pipeline: diff, tests, self-review, autofix hand-off and PR."""

__version__ = "0.3.0"
