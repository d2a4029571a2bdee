"""remedy: automated issue resolution with human-in-the-loop correction."""

__version__ = "0.1.0"
