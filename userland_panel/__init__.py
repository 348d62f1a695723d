"""UserLAnd Panel gateway: authenticated terminals, live metrics and a gated ttyd proxy."""

__version__ = "1.0.0"
