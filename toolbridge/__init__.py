"""toolbridge: bridge a browser toolbar to a coding-agent subprocess."""

__version__ = "0.3.0"
