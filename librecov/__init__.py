"""librecov: self-hosted, Coveralls-compatible code coverage service."""

__version__ = "0.1.0"
