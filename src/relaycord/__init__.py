"""Discord user client core: gateway, entity cache and REST client."""

__version__ = "0.1.0"
