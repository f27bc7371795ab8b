"""HTTP entry points for the MT4 file bridge."""
