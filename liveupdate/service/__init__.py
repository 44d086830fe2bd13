"""Live update daemon services."""
