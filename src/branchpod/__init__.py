"""branchpod - branch-scoped dev servers and consoles with live output."""

__version__ = "0.1.0"
