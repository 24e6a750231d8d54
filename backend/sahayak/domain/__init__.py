"""Pure domain logic with no persistence dependencies."""
