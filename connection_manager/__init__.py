"""Connection and session lifecycle management for the Argo CD command-line tool."""

__version__ = "0.1.0"
