"""HTTP interface for Anvil."""

from anvil.api.server import create_app

__all__ = ["create_app"]
