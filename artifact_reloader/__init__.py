"""Hash-gated, debounced artifact watcher with reload orchestration.

This package watches a single binary artifact on disk and reacts to real
content changes, either by rebuilding in-process state or by restarting an
externally managed process.
"""

__version__ = "0.1.0"
