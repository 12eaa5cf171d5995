"""cratecheck: verify a crate workspace's dependency graph against architecture rules."""

__version__ = "0.3.0"
