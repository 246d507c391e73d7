"""Payment gateway sandbox: checkout sessions, recurring billing and signed webhooks."""

__version__ = "0.1.0"
