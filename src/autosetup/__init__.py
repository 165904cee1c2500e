"""AutoSetup — guided product tours driven against live pages."""

__version__ = "0.1.0"
