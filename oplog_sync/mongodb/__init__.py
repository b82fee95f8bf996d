"""MongoDB store access."""
