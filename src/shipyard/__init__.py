"""shipyard - multi-tenant deployment controller for bundled Node.js services."""

__version__ = "0.3.0"
