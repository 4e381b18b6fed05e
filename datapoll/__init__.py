"""datapoll: incremental data synchronization for multi-session web apps."""

__version__ = "0.1.0"
