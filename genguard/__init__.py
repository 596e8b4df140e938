"""GenGuard: resilient, budget-aware queueing in front of an image-generation API."""

__version__ = "1.0.0"
