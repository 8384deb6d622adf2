"""Discord bot posting EVE Online ratting (NPC kill) reports for tracked systems."""

__version__ = "1.0.0"
