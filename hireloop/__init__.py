"""hireloop: candidate workflow automation on top of an issue tracker."""

__version__ = "1.0.0"
