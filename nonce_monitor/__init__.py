"""Cross-checks AO process nonces between the state gateway and the SU Router."""

__version__ = "0.1.0"
