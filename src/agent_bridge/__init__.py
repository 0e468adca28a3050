"""Uniform streaming bridge over AI coding-assistant CLIs with durable goal/task state."""

__version__ = "0.1.0"
