"""Self-hosted installer for the contact form product."""

__version__ = "1.0.0"
