"""Isolated, permission-gated execution of coding agents against git worktrees."""

__version__ = "0.1.0"
