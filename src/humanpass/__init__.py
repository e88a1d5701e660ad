"""HumanPass -- text humanization with multi-detector validation."""

__version__ = "0.1.0"
