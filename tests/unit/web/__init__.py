"""Unit tests for AssemblyQC web route modules."""
