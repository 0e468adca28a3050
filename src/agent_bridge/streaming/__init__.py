"""Backend adapters that normalize coding-agent output into one chunk protocol."""
