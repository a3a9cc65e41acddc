"""Load balancer building blocks (access lists, address helpers, client and connection tables, readiness polling, direct server return frame handling) and a web log merger."""

__version__ = "0.35.0"