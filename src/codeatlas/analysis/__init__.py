"""Local, network-free code analysis."""

from .patterns import analyze  # noqa: F401
