"""FleetDeck: fleet management and remote deployment over SSH."""

__version__ = "1.0.0"
