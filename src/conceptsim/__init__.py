"""conceptsim: natural-language concept simulations run in an isolated sandbox."""

__version__ = "0.1.0"
