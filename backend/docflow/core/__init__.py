"""Engine-wide configuration, constants, logging and errors."""
