"""PairGate - pairing codes, relationships and time-boxed admin sessions."""

__version__ = "0.1.0"
