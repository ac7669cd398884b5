"""Parallel coding agents, one git worktree and optional sandbox each."""

__version__ = "0.1.0"
