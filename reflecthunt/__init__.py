"""ReflectHunt - reflected parameter discovery pipeline."""

__version__ = "0.3.0"
