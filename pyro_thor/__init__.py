"""pyro-thor: THOR Lite scan runner with an embedded rule and threat-intel store."""

__version__ = "0.1.0"
