"""Mirror of an upstream beatmap catalog with search and packs."""

__version__ = "0.1.0"
