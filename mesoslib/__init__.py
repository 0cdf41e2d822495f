"""Building blocks for Mesos frameworks: SASL authentication, master detection and slave health checking."""

__version__ = "0.1.0"