"""RS Trial Gate: one-time trials and paid access for a gated Discord guild."""

__version__ = "1.0.0"
