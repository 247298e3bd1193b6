"""Service container: builds the domain services and owns their lifecycle."""
