"""anontrust: anonymous identity, trust, and role-gated moderation."""

__version__ = "0.1.0"
