"""HTTP API for AssemblyQC."""
