"""Call-stack anomaly detection: encode call trees, persist arrays, score them."""

__version__ = "0.1.0"
