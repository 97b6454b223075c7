"""On Deck roster data layer: offline-first access to teams, players and game rosters."""

__version__ = "0.1.0"
