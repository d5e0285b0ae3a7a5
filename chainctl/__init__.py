"""chainctl - local proof-of-stake test network controller."""

__version__ = "0.1.0"
