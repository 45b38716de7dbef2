"""AssemblyQC: assembly inspection core for construction sites."""

__version__ = "0.3.0"
