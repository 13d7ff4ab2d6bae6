"""chatrelay: terminal chat front-end with an agentic tool loop."""

__version__ = "0.3.0"
