"""Bridge between GeWe WeChat webhooks and an agent reply pipeline."""

__version__ = "0.1.0"
