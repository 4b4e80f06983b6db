"""converge: bring a single machine to a declared state with idempotent tasks."""

__version__ = "0.4.0"
