"""codelabel - rule-based classification of source code artifacts."""

__version__ = "0.1.0"
