"""Trudger - drive an agent through tracked tasks, one solve and review at a time."""

__version__ = "0.1.0"
