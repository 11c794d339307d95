"""Agent process orchestration: spawn resolution, playbook runs and usage stats."""

__version__ = "0.4.0"
